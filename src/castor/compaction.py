"""Context compaction: lossy reduction of a conversation to fit a budget.

Token costs are estimated with a fixed characters-per-token ratio. The
estimate is approximate; exact tokenization is provider-specific and only a
monotonic correlation with true cost is needed here.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from castor.providers.models import Message

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

_IMPORTANT_SYSTEM_RE = re.compile(
    r"\b(important|critical|must|never|always|required)\b", re.IGNORECASE
)
_QUESTION_START_RE = re.compile(
    r"^\s*(what|why|how|when|where|who|which|can|could|would|should|is|are|do|does)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class CompactionOptions:
    """Budget and protection flags for :func:`compact`.

    ``max_messages`` of None disables the count limit; ``target_tokens`` of
    None disables content truncation.
    """

    max_messages: int | None = 20
    target_tokens: int | None = None
    keep_system: bool = True
    keep_last_user: bool = True
    user_share: float = 0.6
    max_system: int = 3
    head_fraction: float = 0.6
    min_truncate_chars: int = 150
    min_keep_chars: int = 100
    elision_marker: str = " [...] "

    def __post_init__(self) -> None:
        """Validate invariants to keep compaction predictable."""
        if self.max_messages is not None and self.max_messages < 0:
            raise ValueError("CompactionOptions.max_messages must be >= 0 or None")
        if self.target_tokens is not None and self.target_tokens < 0:
            raise ValueError("CompactionOptions.target_tokens must be >= 0 or None")
        if not 0.0 <= self.user_share <= 1.0:
            raise ValueError("CompactionOptions.user_share must be within [0, 1]")
        if self.max_system < 2:
            raise ValueError("CompactionOptions.max_system must be >= 2")
        if not 0.0 < self.head_fraction < 1.0:
            raise ValueError("CompactionOptions.head_fraction must be within (0, 1)")
        if self.min_keep_chars < 1:
            raise ValueError("CompactionOptions.min_keep_chars must be >= 1")
        if self.min_truncate_chars <= self.min_keep_chars + len(self.elision_marker):
            raise ValueError(
                "CompactionOptions.min_truncate_chars must exceed "
                "min_keep_chars plus the elision marker length"
            )
        if not self.elision_marker:
            raise ValueError("CompactionOptions.elision_marker must be non-empty")

    def shrink(self, messages: Sequence[Message], factor: float = 0.6) -> CompactionOptions:
        """Return tighter options relative to the current size of *messages*."""
        if not 0.0 < factor < 1.0:
            raise ValueError("shrink factor must be within (0, 1)")
        max_messages = max(2, math.floor(len(messages) * factor))
        if self.max_messages is not None:
            max_messages = min(max_messages, self.max_messages)
        target = max(1, math.floor(estimate_tokens(messages) * factor))
        if self.target_tokens is not None:
            target = min(target, self.target_tokens)
        return replace(self, max_messages=max_messages, target_tokens=target)


def estimate_message_tokens(message: Message) -> int:
    """Estimate the token cost of one message."""
    chars = len(message.content or "")
    for call in message.tool_calls or ():
        chars += len(call.name) + len(call.arguments)
    return math.ceil(chars / CHARS_PER_TOKEN)


def estimate_tokens(messages: Sequence[Message]) -> int:
    """Estimate the token cost of a conversation."""
    return sum(estimate_message_tokens(m) for m in messages)


def estimate_text_tokens(text: str | None) -> int:
    """Estimate the token cost of a bare string."""
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def within_budget(messages: Sequence[Message], options: CompactionOptions) -> bool:
    """Whether *messages* already satisfy both the count and token budgets."""
    if options.max_messages is not None and len(messages) > options.max_messages:
        return False
    return not (
        options.target_tokens is not None
        and estimate_tokens(messages) > options.target_tokens
    )


def compact(messages: Sequence[Message], options: CompactionOptions) -> list[Message]:
    """Return a shorter conversation that fits *options* as closely as possible.

    Never mutates *messages*. The result never has more messages or more
    estimated tokens than the input, keeps system turns at the front (when
    ``keep_system``) and ends with the newest user turn verbatim (when
    ``keep_last_user`` and a user turn exists). Compacting an already
    compacted conversation with the same options is a no-op.
    """
    if within_budget(messages, options):
        return list(messages)

    system_idx = [i for i, m in enumerate(messages) if m.role == "system"]
    kept_system = (
        _select_system(messages, system_idx, options.max_system)
        if options.keep_system
        else []
    )

    reserved: int | None = None
    if options.keep_last_user:
        for i in range(len(messages) - 1, -1, -1):
            if messages[i].role == "user":
                reserved = i
                break

    user_idx: list[int] = []
    units: list[list[int]] = []
    for i, message in enumerate(messages):
        if message.role == "system" or i == reserved:
            continue
        if message.role == "user":
            user_idx.append(i)
        elif message.role == "tool" and units and units[-1][-1] == i - 1:
            units[-1].append(i)
        else:
            units.append([i])

    if options.max_messages is None:
        remaining = len(messages)
    else:
        remaining = options.max_messages - len(kept_system) - (reserved is not None)
        remaining = max(0, remaining)

    user_budget = min(len(user_idx), math.floor(remaining * options.user_share + 0.5))
    kept_assistant = _select_recent_units(units, remaining - user_budget)
    user_budget = min(len(user_idx), remaining - len(kept_assistant))
    kept_users = _select_users(messages, user_idx, user_budget)

    middle = sorted(kept_users + kept_assistant)
    order = kept_system + middle + ([reserved] if reserved is not None else [])
    result = [messages[i] for i in order]

    protected = set(kept_system)
    if reserved is not None:
        protected.add(reserved)

    if options.target_tokens is not None:
        result = _truncate(result, order, protected, options)

    logger.debug(
        "Compacted conversation from %d to %d messages (~%d -> ~%d tokens)",
        len(messages),
        len(result),
        estimate_tokens(messages),
        estimate_tokens(result),
    )
    return result


def _select_system(
    messages: Sequence[Message], system_idx: list[int], max_system: int
) -> list[int]:
    if len(system_idx) <= max_system:
        return system_idx
    important = [
        i for i in system_idx if _IMPORTANT_SYSTEM_RE.search(messages[i].content or "")
    ]
    if important:
        return important[:max_system]
    return [system_idx[0], system_idx[-1]]


def _select_recent_units(units: list[list[int]], budget: int) -> list[int]:
    kept: list[int] = []
    for unit in reversed(units):
        if len(kept) + len(unit) > budget:
            break
        kept.extend(unit)
    return kept


def _user_score(message: Message, index: int, total: int) -> float:
    text = message.content or ""
    score = 2.0 * (index + 1) / max(total, 1)
    if "?" in text or _QUESTION_START_RE.match(text):
        score += 1.0
    score += 0.5 * min(len(text), 500) / 500
    return score


def _select_users(
    messages: Sequence[Message], user_idx: list[int], budget: int
) -> list[int]:
    if budget <= 0:
        return []
    total = len(messages)
    ranked = sorted(
        user_idx,
        key=lambda i: (_user_score(messages[i], i, total), i),
        reverse=True,
    )
    return ranked[:budget]


def _truncate(
    result: list[Message],
    order: list[int],
    protected: set[int],
    options: CompactionOptions,
) -> list[Message]:
    if options.target_tokens is None:
        return result
    excess = estimate_tokens(result) - options.target_tokens
    if excess <= 0:
        return result

    marker = options.elision_marker
    candidates = [
        pos
        for pos, (idx, message) in enumerate(zip(order, result, strict=True))
        if idx not in protected
        and len(message.content or "") > options.min_truncate_chars
        and marker not in message.content
    ]
    if not candidates:
        return result

    trim_per_message = math.ceil(excess * CHARS_PER_TOKEN / len(candidates))
    truncated = list(result)
    for pos in candidates:
        content = truncated[pos].content
        length = len(content)
        target = max(options.min_keep_chars, length - trim_per_message)
        target = min(target, length - len(marker) - 1)
        keep_start = math.floor(target * options.head_fraction)
        keep_end = target - keep_start
        new_content = content[:keep_start] + marker + content[length - keep_end :]
        truncated[pos] = replace(truncated[pos], content=new_content)
    return truncated
