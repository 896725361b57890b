"""Provider characterization tests.

These tests verify the request/response transformations for each adapter.
They use fake SDK clients to characterize the exact shapes sent to provider
APIs without making real network calls.
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import pytest

from castor.audit import MemoryAuditSink
from castor.errors import ErrorKind, ProviderError, RateLimitError
from castor.fallback import Candidate, FallbackOrchestrator, FallbackPlan
from castor.providers import gemini, provider_class
from castor.providers.gemini import (
    SYSTEM_PREFIX,
    GeminiProvider,
    build_config,
    build_contents,
    gemini_model_name,
)
from castor.providers.models import (
    GenerationParams,
    Message,
    ProviderRequest,
    ToolCall,
    ToolSpec,
)
from castor.providers.nvidia import NvidiaProvider
from castor.providers.openrouter import OpenRouterProvider
from castor.providers.together import TogetherProvider
from tests.helpers import FakeChatClient, ScriptedProvider, chat_completion

pytestmark = pytest.mark.contract

SECRET = "sk-provider-secret-0123456789"
SEARCH = ToolSpec(
    name="search_web",
    description="Search the web",
    parameters={"type": "object", "properties": {"query": {"type": "string"}}},
)


def _request(
    model: str = "m",
    messages: list[Message] | None = None,
    **params: Any,
) -> ProviderRequest:
    return ProviderRequest(
        model=model,
        messages=tuple(messages or [Message.user("hello")]),
        params=GenerationParams(**params),
    )


def _tool_history() -> list[Message]:
    call = ToolCall(id="call_1", name="search_web", arguments='{"query":"x"}')
    return [
        Message.system("Be terse."),
        Message.user("search x"),
        Message.assistant("", tool_calls=[call]),
        Message.tool('{"hits": 3}', tool_call_id="call_1", name="search_web"),
        Message.user("and?"),
    ]


# =============================================================================
# Registry
# =============================================================================


@pytest.mark.parametrize(
    ("name", "cls"),
    [
        ("openrouter", OpenRouterProvider),
        ("gemini", GeminiProvider),
        ("together", TogetherProvider),
        ("nvidia", NvidiaProvider),
    ],
)
def test_provider_class_resolves_registered_adapters(name: str, cls: type) -> None:
    assert provider_class(name) is cls
    assert cls.name == name


def test_provider_class_rejects_unknown_names() -> None:
    with pytest.raises(KeyError):
        provider_class("acme")


# =============================================================================
# OpenAI-compatible payloads
# =============================================================================


def test_max_tokens_is_clamped_to_backend_ceiling() -> None:
    provider = TogetherProvider(SECRET)
    payload = provider.build_payload(_request(max_tokens=4000, stop=["END"]))
    assert payload["max_tokens"] == 1500
    assert payload["stop"] == ["END"]
    assert payload["temperature"] == 0.7
    assert payload["top_p"] == 0.95


def test_tools_are_sent_only_to_capable_openrouter_models() -> None:
    provider = OpenRouterProvider(SECRET)

    capable = provider.build_payload(
        _request("openai/gpt-4o", _tool_history(), tools=[SEARCH], tool_choice="auto")
    )
    assert capable["tools"] == [SEARCH.to_openai()]
    assert capable["tool_choice"] == "auto"
    roles = [m["role"] for m in capable["messages"]]
    assert roles == ["system", "user", "assistant", "tool", "user"]
    assert capable["messages"][2]["tool_calls"][0]["function"]["name"] == "search_web"
    assert capable["messages"][2]["content"] is None
    assert capable["messages"][3]["tool_call_id"] == "call_1"

    plain = provider.build_payload(
        _request("mistralai/mistral-7b-instruct:free", _tool_history(), tools=[SEARCH])
    )
    assert "tools" not in plain
    assert "tool_choice" not in plain
    assert [m["role"] for m in plain["messages"]] == [
        "system",
        "user",
        "assistant",
        "user",
        "user",
    ]
    assert "tool_calls" not in plain["messages"][2]
    assert plain["messages"][3]["content"] == 'Tool result (search_web): {"hits": 3}'


@pytest.mark.asyncio
async def test_structured_reply_is_normalized_with_usage() -> None:
    provider = TogetherProvider(SECRET)
    fake = FakeChatClient(chat_completion("Hi there"))
    provider._client = fake

    response = await provider.send(_request("meta-llama/x"))

    assert response.text == "Hi there"
    assert response.tool_calls == ()
    assert response.finish_reason == "stop"
    assert response.usage == {"input_tokens": 12, "output_tokens": 3, "total_tokens": 15}
    assert fake.calls[0]["model"] == "meta-llama/x"


@pytest.mark.asyncio
async def test_structured_tool_calls_pass_through() -> None:
    provider = OpenRouterProvider(SECRET)
    provider._client = FakeChatClient(
        chat_completion(
            None,
            tool_calls=[
                {
                    "id": "call_9",
                    "type": "function",
                    "function": {"name": "search_web", "arguments": '{"query":"y"}'},
                }
            ],
            finish_reason="tool_calls",
        )
    )

    response = await provider.send(_request("openai/gpt-4o", tools=[SEARCH]))

    assert response.text is None
    assert response.tool_calls == (
        ToolCall(id="call_9", name="search_web", arguments='{"query":"y"}'),
    )
    assert response.finish_reason == "tool_calls"


@pytest.mark.asyncio
async def test_nvidia_recovers_tool_calls_from_free_text() -> None:
    provider = NvidiaProvider(SECRET)
    provider._client = FakeChatClient(
        chat_completion('Checking.<function>search_web{"query":"rain"}<br></function>')
    )

    response = await provider.send(_request("meta/llama-3.3-70b-instruct", tools=[SEARCH]))

    assert response.text == "Checking."
    assert len(response.tool_calls) == 1
    assert response.tool_calls[0].name == "search_web"
    assert json.loads(response.tool_calls[0].arguments) == {"query": "rain"}
    assert provider.settings.parse_text_tool_calls is True


@pytest.mark.asyncio
async def test_together_leaves_free_text_alone() -> None:
    content = '<function>search_web{"query":"rain"}<br></function>'
    provider = TogetherProvider(SECRET)
    provider._client = FakeChatClient(chat_completion(content))

    response = await provider.send(_request())

    assert response.text == content
    assert response.tool_calls == ()


@pytest.mark.asyncio
async def test_error_inside_success_body_is_classified() -> None:
    provider = OpenRouterProvider(SECRET)
    provider._client = FakeChatClient(
        {"error": {"code": 429, "message": "Rate limit exceeded: free-models-per-day"}}
    )

    with pytest.raises(RateLimitError) as exc_info:
        await provider.send(_request())

    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"choices": []},
        {"choices": ["not an object"]},
        chat_completion(""),
        chat_completion("   "),
    ],
)
async def test_unusable_replies_are_malformed(body: dict[str, Any]) -> None:
    provider = TogetherProvider(SECRET)
    provider._client = FakeChatClient(body)

    with pytest.raises(ProviderError) as exc_info:
        await provider.send(_request())

    assert exc_info.value.kind is ErrorKind.MALFORMED_RESPONSE


@pytest.mark.asyncio
async def test_sdk_errors_are_wrapped_and_audited_without_secrets() -> None:
    class _Resp:
        status_code = 401
        headers: dict[str, str] = {}

    class _AuthError(Exception):
        def __init__(self) -> None:
            super().__init__(f"Incorrect API key provided: {SECRET}")
            self.response = _Resp()

    sink = MemoryAuditSink()
    provider = NvidiaProvider(SECRET, audit=sink)
    provider._client = FakeChatClient(_AuthError())

    with pytest.raises(ProviderError) as exc_info:
        await provider.send(_request())

    err = exc_info.value
    assert err.kind is ErrorKind.AUTH_INVALID
    assert err.provider == "nvidia"
    assert SECRET not in str(err)
    assert err.hint is not None and "NVIDIA_API_KEY" in err.hint

    [record] = sink.records
    assert record.success is False
    assert record.error is not None and record.error["kind"] == "auth_invalid"
    assert SECRET not in json.dumps(record.to_dict(), default=str)
    assert record.endpoint == "https://integrate.api.nvidia.com/v1/chat/completions"


@pytest.mark.asyncio
async def test_successful_attempt_is_audited_once() -> None:
    sink = MemoryAuditSink()
    provider = TogetherProvider(SECRET, audit=sink)
    provider._client = FakeChatClient(chat_completion("fine"))

    await provider.send(_request(messages=[Message.user("abcdefgh")]))

    [record] = sink.records
    assert record.success is True
    assert record.provider == "together"
    assert record.message_count == 1
    assert record.prompt_tokens_estimate == 2
    assert record.request["headers"]["Authorization"] == "*** REDACTED ***"
    assert SECRET not in json.dumps(record.to_dict(), default=str)


@pytest.mark.asyncio
async def test_aclose_releases_the_client() -> None:
    provider = TogetherProvider(SECRET)
    fake = FakeChatClient()
    provider._client = fake

    await provider.aclose()
    await provider.aclose()

    assert fake.closed is True
    assert provider._client is None


def test_sdk_client_uses_backend_base_url_without_sdk_retries() -> None:
    provider = TogetherProvider(SECRET)
    client = provider._get_client()
    assert "api.together.xyz" in str(client.base_url)
    assert client.max_retries == 0


# =============================================================================
# Gemini
# =============================================================================


def test_gemini_model_name_strips_routing_prefix() -> None:
    assert gemini_model_name("google/gemini-1.5-flash") == "gemini-1.5-flash"
    assert gemini_model_name("gemini-2.0-flash") == "gemini-2.0-flash"


def test_gemini_contents_fold_system_and_merge_roles() -> None:
    messages = [
        Message.system("Be terse."),
        Message.user("hi"),
        Message.user("again"),
        *_tool_history()[2:],
    ]

    contents = build_contents(messages)

    assert [c.role for c in contents] == ["user", "model", "user"]
    first = contents[0].parts or []
    assert [p.text for p in first] == [f"{SYSTEM_PREFIX}Be terse.", "hi", "again"]
    call = (contents[1].parts or [])[0].function_call
    assert call is not None
    assert call.name == "search_web"
    assert call.args == {"query": "x"}
    last = contents[2].parts or []
    assert last[0].function_response is not None
    assert last[0].function_response.name == "search_web"
    assert last[0].function_response.response == {"hits": 3}
    assert last[1].text == "and?"


def test_gemini_config_clamps_and_maps_stop_sequences() -> None:
    config = build_config(
        GenerationParams(max_tokens=10_000, stop=["END"], temperature=0.1),
        max_output_tokens=8192,
    )
    assert config.max_output_tokens == 8192
    assert config.stop_sequences == ["END"]
    assert config.temperature == 0.1


def test_gemini_config_passes_tool_schemas_through_verbatim() -> None:
    schema = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {"query": {"type": ["string", "null"]}},
    }
    tool = ToolSpec(name="search_web", description="Search the web", parameters=schema)

    config = build_config(GenerationParams(tools=[tool]), max_output_tokens=8192)

    [declaration] = config.tools[0].function_declarations
    assert declaration.name == "search_web"
    assert declaration.parameters_json_schema == schema
    assert declaration.parameters is None


class _FakeGeminiModels:
    def __init__(self, response: Any) -> None:
        self.response = response
        self.calls: list[dict[str, Any]] = []

    async def generate_content(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if isinstance(self.response, BaseException):
            raise self.response
        return self.response


def _gemini_response(*parts: Any, finish_reason: str = "STOP") -> Any:
    return SimpleNamespace(
        candidates=[
            SimpleNamespace(
                content=SimpleNamespace(parts=list(parts)),
                finish_reason=finish_reason,
            )
        ],
        usage_metadata=SimpleNamespace(
            prompt_token_count=5, candidates_token_count=2, total_token_count=7
        ),
    )


def _gemini_provider(response: Any, audit: MemoryAuditSink | None = None) -> tuple[
    GeminiProvider, _FakeGeminiModels
]:
    provider = GeminiProvider(SECRET, audit=audit)
    models = _FakeGeminiModels(response)
    provider._client = SimpleNamespace(aio=SimpleNamespace(models=models))
    return provider, models


@pytest.mark.asyncio
async def test_gemini_reply_text_and_usage_are_normalized() -> None:
    sink = MemoryAuditSink()
    provider, models = _gemini_provider(
        _gemini_response(
            SimpleNamespace(text="thinking...", thought=True, function_call=None),
            SimpleNamespace(text="Hello", thought=None, function_call=None),
        ),
        audit=sink,
    )

    response = await provider.send(_request("google/gemini-2.0-flash"))

    assert response.text == "Hello"
    assert response.usage == {"input_tokens": 5, "output_tokens": 2, "total_tokens": 7}
    assert response.finish_reason == "STOP"
    assert models.calls[0]["model"] == "gemini-2.0-flash"

    [record] = sink.records
    assert record.request["headers"]["x-goog-api-key"] == "*** REDACTED ***"
    assert SECRET not in str(record.request)


@pytest.mark.asyncio
async def test_gemini_function_calls_become_tool_calls() -> None:
    provider, _ = _gemini_provider(
        _gemini_response(
            SimpleNamespace(
                text=None,
                function_call=SimpleNamespace(name="search_web", args={"query": "z"}, id=None),
            )
        )
    )

    response = await provider.send(_request("gemini-2.0-flash"))

    assert response.text is None
    [call] = response.tool_calls
    assert call.name == "search_web"
    assert call.id.startswith("call_")
    assert json.loads(call.arguments) == {"query": "z"}


@pytest.mark.asyncio
async def test_gemini_empty_candidates_are_malformed() -> None:
    provider, _ = _gemini_provider(SimpleNamespace(candidates=[], usage_metadata=None))

    with pytest.raises(ProviderError) as exc_info:
        await provider.send(_request("gemini-2.0-flash"))

    assert exc_info.value.kind is ErrorKind.MALFORMED_RESPONSE


@pytest.mark.asyncio
async def test_gemini_quota_error_is_rate_limited() -> None:
    class _ClientError(Exception):
        def __init__(self) -> None:
            super().__init__("429 RESOURCE_EXHAUSTED. Quota exceeded.")
            self.code = 429

    provider, _ = _gemini_provider(_ClientError())

    with pytest.raises(RateLimitError) as exc_info:
        await provider.send(_request("gemini-2.0-flash"))

    assert exc_info.value.provider == "gemini"


def _reject_schema(*args: Any, **kwargs: Any) -> Any:
    raise ValueError("Extra inputs are not permitted: $schema")


@pytest.mark.asyncio
async def test_gemini_request_build_failure_is_wrapped_and_audited(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(gemini, "build_config", _reject_schema)
    sink = MemoryAuditSink()
    provider, models = _gemini_provider(_gemini_response(), audit=sink)

    with pytest.raises(ProviderError) as exc_info:
        await provider.send(_request("gemini-2.0-flash", tools=[SEARCH]))

    assert exc_info.value.provider == "gemini"
    assert isinstance(exc_info.value.__cause__, ValueError)
    assert models.calls == []
    [record] = sink.records
    assert record.success is False
    assert record.error is not None
    assert record.request["body"]["generationConfig"] is None


@pytest.mark.asyncio
async def test_gemini_request_build_failure_falls_back_to_next_provider(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(gemini, "build_config", _reject_schema)
    provider, _ = _gemini_provider(_gemini_response())
    backup = ScriptedProvider("nvidia")
    orchestrator = FallbackOrchestrator({"gemini": provider, "nvidia": backup})
    plan = FallbackPlan(
        [
            Candidate("gemini", "gemini-2.0-flash"),
            Candidate("nvidia", "meta/llama-3.3-70b-instruct"),
        ]
    )

    result = await orchestrator.run(
        plan, [Message.user("hello")], GenerationParams(tools=[SEARCH])
    )

    assert result.provider == "nvidia"
    assert backup.calls == 1
    assert [a.candidate.provider for a in result.attempts] == ["gemini", "nvidia"]
    assert not result.attempts[0].succeeded
