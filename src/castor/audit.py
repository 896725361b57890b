"""Per-attempt audit records and sinks.

Each adapter call emits exactly one record describing the request (with
secrets redacted), the response, timing and token estimates. Sinks are
external collaborators: Castor writes to them and never reads them back.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
import json
import logging
import math
from pathlib import Path
import time
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from castor.compaction import CHARS_PER_TOKEN, estimate_tokens

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from castor.providers.models import CanonicalResponse, Message

logger = logging.getLogger(__name__)

REDACTED = "*** REDACTED ***"

_SENSITIVE_HEADER_KEYS: frozenset[str] = frozenset(
    {"authorization", "x-goog-api-key", "api-key", "x-api-key"}
)


@dataclass(frozen=True)
class AuditRecord:
    """One provider attempt, as written to the audit sink."""

    endpoint: str
    provider: str
    model: str
    request: dict[str, Any]
    response: Any
    execution_time_ms: int
    message_count: int
    prompt_tokens_estimate: int
    completion_tokens_estimate: int
    success: bool
    error: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class AuditSink(Protocol):
    """Duck-typed protocol for audit sinks."""

    async def write(self, record: AuditRecord) -> None: ...  # noqa: D102


class NullAuditSink:
    """Discard every record."""

    async def write(self, record: AuditRecord) -> None:  # noqa: ARG002
        return None


class MemoryAuditSink:
    """Keep records in memory; handy for tests and debugging sessions."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    async def write(self, record: AuditRecord) -> None:
        self.records.append(record)


class JsonlAuditSink:
    """Append records as JSON lines to a file.

    Each record is a single ``write`` in append mode, so concurrent writers
    interleave whole lines.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def write(self, record: AuditRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False, default=str)
        await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")


async def emit(sink: AuditSink | None, record: AuditRecord) -> None:
    """Write *record* to *sink*; sink failures are logged and never raised."""
    if sink is None:
        return
    try:
        await sink.write(record)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning(
            "Audit sink write failed for %s (%s): %s",
            record.provider,
            record.model,
            exc,
        )


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Return a copy of *headers* with credential headers masked."""
    redacted: dict[str, str] = {}
    for key, value in headers.items():
        redacted[key] = REDACTED if key.lower() in _SENSITIVE_HEADER_KEYS else value
    return redacted


def scrub(value: Any, secret: str | None) -> Any:
    """Recursively replace occurrences of *secret* inside strings."""
    if not secret:
        return value
    if isinstance(value, str):
        return value.replace(secret, REDACTED)
    if isinstance(value, dict):
        return {k: scrub(v, secret) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [scrub(v, secret) for v in value]
    return value


def attempt_record(
    *,
    endpoint: str,
    provider: str,
    model: str,
    headers: Mapping[str, str],
    body: Any,
    response: Any,
    messages: Sequence[Message],
    result: CanonicalResponse | None,
    error: dict[str, Any] | None,
    started: float,
    secret: str | None,
) -> AuditRecord:
    """Build the record for one adapter call; *started* is a monotonic time."""
    completion_chars = 0
    if result is not None:
        completion_chars = len(result.text or "") + sum(
            len(call.name) + len(call.arguments) for call in result.tool_calls
        )
    return AuditRecord(
        endpoint=endpoint,
        provider=provider,
        model=model,
        request=scrub({"headers": redact_headers(dict(headers)), "body": body}, secret),
        response=scrub(response, secret),
        execution_time_ms=int((time.monotonic() - started) * 1000),
        message_count=len(messages),
        prompt_tokens_estimate=estimate_tokens(messages),
        completion_tokens_estimate=math.ceil(completion_chars / CHARS_PER_TOKEN),
        success=error is None and result is not None,
        error=scrub(error, secret),
    )
