"""Gemini provider implementation."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from castor.audit import attempt_record, emit
from castor.config import DEFAULT_PROVIDERS, ProviderSettings
from castor.errors import ConfigurationError, ErrorKind, ProviderError
from castor.providers._errors import (
    classify_gemini,
    make_provider_error,
    wrap_provider_error,
)
from castor.providers.models import CanonicalResponse, ToolCall
from castor.toolcalls import new_call_id

if TYPE_CHECKING:
    from collections.abc import Sequence

    from google.genai import types

    from castor.audit import AuditSink
    from castor.providers.models import GenerationParams, Message, ProviderRequest

logger = logging.getLogger(__name__)

SYSTEM_PREFIX = "System instruction: "
_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


def gemini_model_name(model: str) -> str:
    """Strip the ``google/`` routing prefix used by aggregator model ids."""
    return model.removeprefix("google/")


def _load_args(arguments: str) -> dict[str, Any]:
    try:
        value = json.loads(arguments)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def _tool_result_payload(content: str) -> dict[str, Any]:
    try:
        value = json.loads(content) if content else {}
    except ValueError:
        return {"result": content}
    return value if isinstance(value, dict) else {"result": content}


def build_contents(messages: Sequence[Message]) -> list[types.Content]:
    """Map canonical turns to Gemini contents.

    Gemini has no system role and requires user/model alternation, so system
    turns are folded into user turns with a ``System instruction:`` prefix and
    consecutive same-role turns are merged into one content block.
    """
    from google.genai import types

    contents: list[types.Content] = []
    call_names: dict[str, str] = {}

    def push(role: str, parts: list[types.Part]) -> None:
        if not parts:
            return
        if contents and contents[-1].role == role:
            contents[-1].parts = [*(contents[-1].parts or []), *parts]
        else:
            contents.append(types.Content(role=role, parts=parts))

    for message in messages:
        if message.role == "system":
            push("user", [types.Part.from_text(text=f"{SYSTEM_PREFIX}{message.content}")])
        elif message.role == "user":
            if message.content:
                push("user", [types.Part.from_text(text=message.content)])
        elif message.role == "assistant":
            parts: list[types.Part] = []
            if message.content:
                parts.append(types.Part.from_text(text=message.content))
            for call in message.tool_calls or ():
                call_names[call.id] = call.name
                parts.append(
                    types.Part.from_function_call(
                        name=call.name, args=_load_args(call.arguments)
                    )
                )
            push("model", parts)
        else:
            name = message.name or call_names.get(message.tool_call_id or "", "unknown_tool")
            push(
                "user",
                [
                    types.Part.from_function_response(
                        name=name, response=_tool_result_payload(message.content)
                    )
                ],
            )
    return contents


def build_config(
    params: GenerationParams, *, max_output_tokens: int
) -> types.GenerateContentConfig:
    """Map canonical generation params to a GenerateContentConfig."""
    from google.genai import types

    config_kwargs: dict[str, Any] = {
        "temperature": params.temperature,
        "top_p": params.top_p,
        "max_output_tokens": min(params.max_tokens, max_output_tokens),
    }
    if params.stop:
        config_kwargs["stop_sequences"] = list(params.stop)
    if params.tools:
        config_kwargs["tools"] = [
            types.Tool(
                function_declarations=[
                    types.FunctionDeclaration(
                        name=spec.name,
                        description=spec.description,
                        parameters_json_schema=spec.parameters,
                    )
                    for spec in params.tools
                ]
            )
        ]
        if params.tool_choice is not None:
            mode = "ANY" if params.tool_choice == "required" else params.tool_choice.upper()
            config_kwargs["tool_config"] = {"function_calling_config": {"mode": mode}}
    return types.GenerateContentConfig(**config_kwargs)


def _dump(value: Any) -> Any:
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        return dump(mode="json", exclude_none=True)
    return value


def _enum_name(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    name = getattr(value, "name", None)
    return name if isinstance(name, str) else str(value)


class GeminiProvider:
    """Google Gemini API provider."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        *,
        settings: ProviderSettings | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        """Create provider with an API key."""
        self.api_key = api_key
        self.settings = settings or DEFAULT_PROVIDERS[self.name]
        self.audit = audit
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazy-initialize the Gemini client."""
        if self._client is None:
            try:
                from google import genai
            except ImportError as e:
                raise ConfigurationError(
                    "google-genai package not installed",
                    hint="pip install google-genai",
                ) from e
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def send(self, request: ProviderRequest) -> CanonicalResponse:
        """Generate content from the Gemini model."""
        client = self._get_client()
        model = gemini_model_name(request.model)
        started = time.monotonic()
        contents: list[types.Content] = []
        config: types.GenerateContentConfig | None = None
        raw: Any = None
        result: CanonicalResponse | None = None
        error: dict[str, Any] | None = None
        try:
            # Caller-supplied tool schemas can fail SDK validation here.
            try:
                contents = build_contents(request.messages)
                config = build_config(
                    request.params, max_output_tokens=self.settings.max_output_tokens
                )
                response = await client.aio.models.generate_content(
                    model=model, contents=contents, config=config
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise wrap_provider_error(
                    e,
                    provider=self.name,
                    model=request.model,
                    classify=classify_gemini,
                    api_key=self.api_key,
                    key_env=self.settings.api_key_env,
                ) from e
            raw = _dump(response)
            result = self._parse_response(response, request.model, raw)
            return result
        except asyncio.CancelledError:
            error = {"kind": "cancelled", "message": "request cancelled"}
            raise
        except ProviderError as err:
            error = {
                "kind": err.kind.value,
                "message": err.message,
                "status_code": err.status_code,
            }
            raise
        finally:
            await emit(
                self.audit,
                attempt_record(
                    endpoint=_ENDPOINT.format(model=model),
                    provider=self.name,
                    model=request.model,
                    headers={"x-goog-api-key": self.api_key},
                    body={
                        "contents": [_dump(c) for c in contents],
                        "generationConfig": _dump(config),
                    },
                    response=raw,
                    messages=request.messages,
                    result=result,
                    error=error,
                    started=started,
                    secret=self.api_key,
                ),
            )

    def _parse_response(self, response: Any, model: str, raw: Any) -> CanonicalResponse:
        """Parse a GenerateContentResponse into a CanonicalResponse."""
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            raise self._malformed(model, "response has no candidates", raw)
        candidate = candidates[0]
        content = getattr(candidate, "content", None)
        parts = getattr(content, "parts", None) or []

        texts: list[str] = []
        tool_calls: list[ToolCall] = []
        for part in parts:
            call = getattr(part, "function_call", None)
            if call is not None and getattr(call, "name", None):
                tool_calls.append(
                    ToolCall(
                        id=str(getattr(call, "id", None) or new_call_id()),
                        name=str(call.name),
                        arguments=json.dumps(getattr(call, "args", None) or {}),
                    )
                )
                continue
            text = getattr(part, "text", None)
            if isinstance(text, str) and not getattr(part, "thought", False):
                texts.append(text)

        usage: dict[str, int] = {}
        um = getattr(response, "usage_metadata", None)
        if um is not None:
            # Gemini SDK attrs → provider-agnostic keys
            for source, target in (
                ("prompt_token_count", "input_tokens"),
                ("candidates_token_count", "output_tokens"),
                ("total_token_count", "total_tokens"),
            ):
                value = getattr(um, source, None)
                if isinstance(value, int):
                    usage[target] = value

        text = "".join(texts).strip() or None
        parsed = CanonicalResponse(
            text=text,
            tool_calls=tuple(tool_calls),
            usage=usage,
            finish_reason=_enum_name(getattr(candidate, "finish_reason", None)),
        )
        if parsed.is_empty:
            raise self._malformed(
                model, "response carried neither text nor a tool call", raw
            )
        return parsed

    def _malformed(self, model: str, reason: str, raw: Any) -> ProviderError:
        return make_provider_error(
            ErrorKind.MALFORMED_RESPONSE,
            reason,
            provider=self.name,
            model=model,
            body=json.dumps(raw, ensure_ascii=False, default=str),
            api_key=self.api_key,
        )

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        aclose = getattr(getattr(client, "aio", None), "aclose", None)
        if callable(aclose):
            await aclose()
