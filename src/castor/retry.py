"""Fallback policy: bounded, explicit decisions for the orchestrator loop.

Design goals:
- Explicit state (policy + attempt counters live in the orchestrator)
- No substring matching here; decisions key off the classified ErrorKind
- Cancellation is never treated as a provider failure
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from castor.errors import ErrorKind

_ADVANCE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.RATE_LIMITED,
        ErrorKind.MODEL_UNAVAILABLE,
        ErrorKind.TRANSPORT,
        ErrorKind.AUTH_INVALID,
        ErrorKind.MALFORMED_RESPONSE,
    }
)


class Decision(str, Enum):
    """What the orchestrator does after a failed attempt."""

    RETRY_COMPACTED = "retry_compacted"
    ADVANCE = "advance"
    EXHAUST = "exhaust"


@dataclass(frozen=True)
class FallbackPolicy:
    """Bounds for one fallback run.

    ``attempt_timeout_s`` caps a single adapter call and ``deadline_s`` caps
    the whole run; either may be None to disable it.
    """

    attempt_timeout_s: float | None = 60.0
    deadline_s: float | None = 180.0
    max_compactions_per_candidate: int = 1
    shrink_factor: float = 0.6

    def __post_init__(self) -> None:
        """Validate invariants to keep fallback behavior predictable."""
        if self.attempt_timeout_s is not None and self.attempt_timeout_s <= 0:
            raise ValueError("FallbackPolicy.attempt_timeout_s must be > 0 or None")
        if self.deadline_s is not None and self.deadline_s <= 0:
            raise ValueError("FallbackPolicy.deadline_s must be > 0 or None")
        if self.max_compactions_per_candidate < 0:
            raise ValueError("FallbackPolicy.max_compactions_per_candidate must be >= 0")
        if not 0.0 < self.shrink_factor < 1.0:
            raise ValueError("FallbackPolicy.shrink_factor must be within (0, 1)")


def decide(
    kind: ErrorKind,
    *,
    policy: FallbackPolicy,
    is_last: bool,
    compactions_used: int,
) -> Decision:
    """Return the next step after a failure of *kind*.

    Contract:
    - ContextTooLong retries the same candidate while compaction budget remains.
    - Every other classified kind moves to the next candidate.
    - With no next candidate the run is exhausted.
    """
    if (
        kind is ErrorKind.CONTEXT_TOO_LONG
        and compactions_used < policy.max_compactions_per_candidate
    ):
        return Decision.RETRY_COMPACTED
    if is_last:
        return Decision.EXHAUST
    if kind in _ADVANCE_KINDS or kind is ErrorKind.CONTEXT_TOO_LONG:
        return Decision.ADVANCE
    return Decision.EXHAUST
