"""Exception hierarchy for Castor."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class CastorError(Exception):
    """Base exception for all Castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or resolution failed."""


class ErrorKind(str, Enum):
    """Closed taxonomy of provider failures."""

    RATE_LIMITED = "rate_limited"
    CONTEXT_TOO_LONG = "context_too_long"
    MODEL_UNAVAILABLE = "model_unavailable"
    AUTH_INVALID = "auth_invalid"
    MALFORMED_RESPONSE = "malformed_response"
    TRANSPORT = "transport"


class ProviderError(CastorError):
    """A provider call failed with a classified reason.

    ``body`` holds a truncated, secret-scrubbed excerpt of the provider's
    error payload for diagnostics.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        provider: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
        retry_after: datetime | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.kind = kind
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.body = body
        self.retry_after = retry_after

    @property
    def message(self) -> str:
        """Return the human-readable message."""
        return self.args[0] if self.args else ""


class RateLimitError(ProviderError):
    """Provider quota or rate limit hit.

    ``retry_after`` is always set and never earlier than construction time.
    When the provider gives no hint, the next UTC midnight is assumed since
    most free-tier quotas reset daily.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
        retry_after: datetime | None = None,
        hint: str | None = None,
        now: datetime | None = None,
    ) -> None:
        current = now or datetime.now(UTC)
        if retry_after is None:
            retry_after = next_utc_midnight(current)
        elif retry_after < current:
            retry_after = current
        super().__init__(
            message,
            kind=ErrorKind.RATE_LIMITED,
            provider=provider,
            model=model,
            status_code=status_code,
            body=body,
            retry_after=retry_after,
            hint=hint,
        )


class FallbackExhaustedError(CastorError):
    """Every candidate in a fallback plan failed, or a terminal error stopped it.

    Carries the last classified error and the number of attempts made so
    callers can present one coherent failure.
    """

    def __init__(
        self,
        last_error: ProviderError,
        *,
        attempts: int,
        errors: Sequence[ProviderError] = (),
    ) -> None:
        super().__init__(
            f"All provider attempts failed after {attempts} attempt(s); "
            f"last error ({last_error.kind.value}): {last_error}",
            hint=last_error.hint,
        )
        self.last_error = last_error
        self.attempts = attempts
        self.errors = tuple(errors)

    @property
    def kind(self) -> ErrorKind:
        """Return the kind of the last classified error."""
        return self.last_error.kind


def next_utc_midnight(now: datetime | None = None) -> datetime:
    """Return the first UTC midnight strictly after *now*."""
    current = (now or datetime.now(UTC)).astimezone(UTC)
    tomorrow = current.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=UTC)


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
