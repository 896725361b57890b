"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off provider classes as coverage expands.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any

from castor.errors import ErrorKind, ProviderError, RateLimitError
from castor.providers.models import CanonicalResponse, Message, ProviderRequest


@dataclass
class ScriptedProvider:
    """Provider double that returns a scripted sequence of results/exceptions.

    Records every request so tests can assert on what was sent.
    """

    name: str = "scripted"
    script: list[CanonicalResponse | BaseException] = field(default_factory=list)
    requests: list[ProviderRequest] = field(default_factory=list)
    closed: bool = False

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def send(self, request: ProviderRequest) -> CanonicalResponse:
        self.requests.append(request)
        if not self.script:
            return CanonicalResponse(text=f"ok from {self.name}")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


def rate_limited(provider: str = "scripted", message: str = "quota exceeded") -> RateLimitError:
    return RateLimitError(message, provider=provider, model="m", status_code=429)


def failure(kind: ErrorKind, provider: str = "scripted", status_code: int | None = None) -> ProviderError:
    return ProviderError(
        f"{kind.value} failure",
        kind=kind,
        provider=provider,
        model="m",
        status_code=status_code,
    )


def conversation(
    turns: int,
    *,
    system: str | None = "You are a helpful assistant.",
    content_chars: int = 40,
) -> list[Message]:
    """Build a system turn plus *turns* alternating user/assistant turns.

    The final turn is always a user turn.
    """
    messages: list[Message] = []
    if system is not None:
        messages.append(Message.system(system))
    start = 0 if turns % 2 == 1 else 1
    for i in range(start, turns + start):
        filler = ("x" * content_chars)[: max(0, content_chars - 10)]
        if i % 2 == 0:
            messages.append(Message.user(f"user {i} {filler}"))
        else:
            messages.append(Message.assistant(f"assistant {i} {filler}"))
    return messages


def chat_completion(
    content: str | None = "hello",
    *,
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str = "stop",
) -> dict[str, Any]:
    """Return a chat-completions response body as a plain dict."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {
        "id": "cmpl-1",
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
    }


class FakeChatClient:
    """Stand-in for ``AsyncOpenAI`` exposing ``chat.completions.create``."""

    def __init__(self, *results: Any) -> None:
        self.results = list(results)
        self.calls: list[dict[str, Any]] = []
        self.closed = False
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        item = self.results.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
