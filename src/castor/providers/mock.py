"""Mock provider for testing."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from castor.audit import AuditRecord, emit
from castor.compaction import estimate_text_tokens, estimate_tokens
from castor.providers.models import CanonicalResponse

if TYPE_CHECKING:
    from castor.audit import AuditSink
    from castor.providers.models import ProviderRequest


class MockProvider:
    """Mock provider for testing without API calls.

    Echoes the newest user turn so fallback and compaction behavior can be
    exercised end to end without network access.
    """

    def __init__(self, name: str = "mock", *, audit: AuditSink | None = None) -> None:
        self.name = name
        self.audit = audit
        self.requests: list[ProviderRequest] = []

    async def send(self, request: ProviderRequest) -> CanonicalResponse:
        """Return a deterministic echo of the last user turn."""
        started = time.monotonic()
        self.requests.append(request)
        prompt = next(
            (m.content for m in reversed(request.messages) if m.role == "user"), ""
        )
        text = f"echo: {prompt[:100]}"
        await emit(
            self.audit,
            AuditRecord(
                endpoint=f"mock://{self.name}",
                provider=self.name,
                model=request.model,
                request={"messages": len(request.messages)},
                response={"text": text},
                execution_time_ms=int((time.monotonic() - started) * 1000),
                message_count=len(request.messages),
                prompt_tokens_estimate=estimate_tokens(request.messages),
                completion_tokens_estimate=estimate_text_tokens(text),
                success=True,
            ),
        )
        return CanonicalResponse(
            text=text,
            usage={"input_tokens": 10, "total_tokens": 20},
            finish_reason="stop",
        )

    async def aclose(self) -> None:
        """Nothing to release."""
        return None
