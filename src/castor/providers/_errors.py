"""Shared provider-side error helpers.

Adapters funnel every SDK failure through :func:`wrap_provider_error`, which
classifies it into an :class:`~castor.errors.ErrorKind` using one small
function per backend over ``(status_code, body_text)``. The marker tables are
shared; each backend only adds the quirks it is known for.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
import json
import math
import re
from typing import Any

import httpx
import openai

from castor.audit import scrub
from castor.errors import (
    ErrorKind,
    ProviderError,
    RateLimitError,
    _walk_exception_chain,
)

BODY_EXCERPT_CHARS = 500

Classifier = Callable[[int | None, str], ErrorKind]

RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "quota exceeded",
    "free-models-per-day",
    "resource_exhausted",
)
AUTH_MARKERS: tuple[str, ...] = (
    "invalid api key",
    "invalid_api_key",
    "incorrect api key",
    "api key not valid",
    "no auth credentials",
    "unauthorized",
    "authentication",
    "permission denied",
)
CONTEXT_MARKERS: tuple[str, ...] = (
    "token limit",
    "context length",
    "context_length",
    "maximum context",
    "context window",
    "too many tokens",
    "prompt is too long",
    "input is too long",
    "input token count",
)
UNAVAILABLE_MARKERS: tuple[str, ...] = (
    "model not found",
    "no endpoints found",
    "not available",
    "does not exist",
    "overloaded",
)


def _has(text: str, markers: tuple[str, ...]) -> bool:
    return any(m in text for m in markers)


def _classify_common(status_code: int | None, text: str) -> ErrorKind:
    lowered = text.lower()
    if status_code == 429 or _has(lowered, RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMITED
    if status_code in (401, 403) or _has(lowered, AUTH_MARKERS):
        return ErrorKind.AUTH_INVALID
    if status_code == 413 or _has(lowered, CONTEXT_MARKERS):
        return ErrorKind.CONTEXT_TOO_LONG
    if status_code in (404, 503) or _has(lowered, UNAVAILABLE_MARKERS):
        return ErrorKind.MODEL_UNAVAILABLE
    return ErrorKind.TRANSPORT


def classify_openrouter(status_code: int | None, text: str) -> ErrorKind:
    """Classify an OpenRouter failure; 402 (credits exhausted) counts as a quota."""
    if status_code == 402:
        return ErrorKind.RATE_LIMITED
    return _classify_common(status_code, text)


def classify_gemini(status_code: int | None, text: str) -> ErrorKind:
    """Classify a Gemini failure; a bad key arrives as a 400."""
    if status_code == 400 and "api key not valid" in text.lower():
        return ErrorKind.AUTH_INVALID
    return _classify_common(status_code, text)


def _classify_validation_422(status_code: int | None, text: str) -> ErrorKind:
    if status_code == 422 and _has(text.lower(), CONTEXT_MARKERS):
        return ErrorKind.CONTEXT_TOO_LONG
    return _classify_common(status_code, text)


def classify_together(status_code: int | None, text: str) -> ErrorKind:
    """Classify a Together failure; oversized prompts come back as 422."""
    return _classify_validation_422(status_code, text)


def classify_nvidia(status_code: int | None, text: str) -> ErrorKind:
    """Classify an NVIDIA failure; oversized prompts come back as 422."""
    return _classify_validation_422(status_code, text)


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status", "code"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def _header(exc: BaseException, name: str) -> str | None:
    for e in _walk_exception_chain(exc):
        headers: Any = getattr(getattr(e, "response", None), "headers", None)
        if headers is None:
            continue
        try:
            raw = headers.get(name)
        except Exception:
            raw = None
        if isinstance(raw, str) and raw.strip():
            return raw.strip()
    return None


_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def _extract_retry_info_seconds(exc: BaseException) -> float | None:
    """Extract retry delay from Google API-style RetryInfo in error details.

    Gemini SDK ``ClientError`` exposes the parsed JSON body via a ``.details``
    attribute shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    details: Any = getattr(exc, "details", None)
    if not isinstance(details, dict):
        return None
    error: Any = details.get("error")
    if not isinstance(error, dict):
        return None
    detail_list: Any = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def _seconds_from(now: datetime, seconds: float) -> datetime | None:
    """Return *now* plus *seconds*, or None for negative or unrepresentable delays."""
    if not math.isfinite(seconds) or seconds < 0:
        return None
    try:
        return now + timedelta(seconds=seconds)
    except OverflowError:
        return None


def _parse_retry_after_header(raw: str, now: datetime) -> datetime | None:
    try:
        seconds = float(raw)
    except ValueError:
        seconds = None
    if seconds is not None:
        return _seconds_from(now, seconds)
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_ratelimit_reset(raw: str, now: datetime) -> datetime | None:
    """Parse ``x-ratelimit-reset``: epoch milliseconds, epoch seconds or a delta."""
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value) or value < 0:
        return None
    try:
        if value >= 1e11:
            return datetime.fromtimestamp(value / 1000.0, tz=UTC)
        if value >= 1e9:
            return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None
    return _seconds_from(now, value)


def extract_retry_after(
    exc: BaseException, *, now: datetime | None = None
) -> datetime | None:
    """Walk the exception chain for a reset hint, returned as an absolute UTC time."""
    current = now or datetime.now(UTC)
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=UTC)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            parsed = _seconds_from(current, float(value))
            if parsed is not None:
                return parsed

    raw = _header(exc, "Retry-After")
    if raw is not None:
        parsed = _parse_retry_after_header(raw, current)
        if parsed is not None:
            return parsed

    raw = _header(exc, "x-ratelimit-reset")
    if raw is not None:
        parsed = _parse_ratelimit_reset(raw, current)
        if parsed is not None:
            return parsed

    for e in _walk_exception_chain(exc):
        seconds = _extract_retry_info_seconds(e)
        if seconds is not None:
            parsed = _seconds_from(current, seconds)
            if parsed is not None:
                return parsed
    return None


def extract_error_body(exc: BaseException) -> str:
    """Return the provider's error payload as text, or the exception message."""
    for e in _walk_exception_chain(exc):
        for attr in ("body", "details"):
            value = getattr(e, attr, None)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, (dict, list)) and value:
                return json.dumps(value, ensure_ascii=False, default=str)
        response = getattr(e, "response", None)
        if isinstance(response, httpx.Response):
            try:
                text = response.text
            except httpx.ResponseNotRead:
                continue
            if text:
                return text
    return str(exc)


def is_transport_error(exc: BaseException) -> bool:
    """Whether *exc* is a connection-level failure with no HTTP response."""
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, httpx.TimeoutException, httpx.RequestError)):
            return True
        if isinstance(e, openai.APIConnectionError):
            return True
    return False


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    model: str,
    classify: Classifier,
    api_key: str | None = None,
    key_env: str | None = None,
    now: datetime | None = None,
) -> ProviderError:
    """Map an SDK exception into a classified, secret-free ProviderError."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already classified: fill in missing context only.
    if isinstance(exc, ProviderError):
        if exc.provider is None:
            exc.provider = provider
        if exc.model is None:
            exc.model = model
        return exc

    status_code = extract_status_code(exc)
    body = extract_error_body(exc)
    cause = str(exc)
    if status_code is None and is_transport_error(exc):
        kind = ErrorKind.TRANSPORT
    else:
        kind = classify(status_code, f"{cause} {body}")

    return make_provider_error(
        kind,
        cause,
        provider=provider,
        model=model,
        status_code=status_code,
        body=body,
        retry_after=extract_retry_after(exc, now=now),
        api_key=api_key,
        key_env=key_env,
        now=now,
    )


def make_provider_error(
    kind: ErrorKind,
    cause: str,
    *,
    provider: str,
    model: str,
    status_code: int | None = None,
    body: str | None = None,
    retry_after: datetime | None = None,
    api_key: str | None = None,
    key_env: str | None = None,
    now: datetime | None = None,
) -> ProviderError:
    """Build the ProviderError (or RateLimitError) for *kind*, secrets scrubbed."""
    body_excerpt = (
        scrub(body, api_key)[:BODY_EXCERPT_CHARS] if body is not None else None
    )
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause_excerpt = scrub(cause, api_key)[:BODY_EXCERPT_CHARS]
    message = f"{provider} request for {model} failed{status_note}: {cause_excerpt}"

    hint = None
    if kind is ErrorKind.AUTH_INVALID:
        hint = f"Check credentials (try setting {key_env or 'the API key'})."
    elif kind is ErrorKind.CONTEXT_TOO_LONG:
        hint = "Reduce the conversation or lower max_messages."

    if kind is ErrorKind.RATE_LIMITED:
        return RateLimitError(
            message,
            provider=provider,
            model=model,
            status_code=status_code,
            body=body_excerpt,
            retry_after=retry_after,
            now=now,
        )
    return ProviderError(
        message,
        kind=kind,
        provider=provider,
        model=model,
        status_code=status_code,
        body=body_excerpt,
        hint=hint,
    )
