"""Fallback orchestration across an ordered chain of provider candidates.

One request runs as a small sequential state machine::

    Attempting(candidate) --success--> Succeeded(result)
    Attempting(candidate) --context_too_long, compaction left--> Attempting(same)
    Attempting(candidate) --other failure, next exists--> Attempting(next)
    Attempting(candidate) --failure, no next--> Exhausted(last_error)

Before every attempt the conversation is compacted to the candidate's
context budget. The orchestrator is request-scoped: it never persists rate
limit windows itself and instead surfaces ``retry_after`` for the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import UTC, datetime
import logging
import time
from typing import TYPE_CHECKING

from castor.compaction import CompactionOptions, compact, estimate_tokens
from castor.errors import (
    ConfigurationError,
    ErrorKind,
    FallbackExhaustedError,
    ProviderError,
    RateLimitError,
)
from castor.providers.models import GenerationParams, ProviderRequest
from castor.retry import Decision, FallbackPolicy, decide

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from castor.config import Config, ProviderSettings
    from castor.providers.base import ChatProvider
    from castor.providers.models import CanonicalResponse, Message, ToolCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """One (provider, model) pair in a fallback chain."""

    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"


class FallbackPlan:
    """Ordered candidates with a forward-only cursor."""

    def __init__(self, candidates: Sequence[Candidate]) -> None:
        if not candidates:
            raise ConfigurationError("A fallback plan needs at least one candidate")
        self._candidates = tuple(candidates)
        self._cursor = 0

    @property
    def candidates(self) -> tuple[Candidate, ...]:
        return self._candidates

    @property
    def current(self) -> Candidate:
        return self._candidates[self._cursor]

    @property
    def is_last(self) -> bool:
        return self._cursor >= len(self._candidates) - 1

    @property
    def remaining(self) -> int:
        """Number of candidates after the current one."""
        return len(self._candidates) - 1 - self._cursor

    def advance(self) -> Candidate | None:
        """Move to the next candidate; None when the plan is used up."""
        if self.is_last:
            return None
        self._cursor += 1
        return self.current

    def __len__(self) -> int:
        return len(self._candidates)

    def __iter__(self) -> Iterator[Candidate]:
        return iter(self._candidates)

    def __repr__(self) -> str:
        chain = ", ".join(str(c) for c in self._candidates)
        return f"FallbackPlan([{chain}], cursor={self._cursor})"


def build_plan(
    config: Config,
    *,
    cooldowns: Mapping[str, datetime] | None = None,
    now: datetime | None = None,
) -> FallbackPlan:
    """Build the plan for one request from the configured routes.

    Keeps candidates whose provider has an API key (every candidate in mock
    mode), drops duplicates, and skips providers whose cooldown, keyed by
    provider name or ``provider:model``, has not yet passed.
    """
    current = now or datetime.now(UTC)
    cooldowns = cooldowns or {}
    seen: set[Candidate] = set()
    candidates: list[Candidate] = []
    for provider, model in config.routes:
        candidate = Candidate(provider, model)
        if candidate in seen:
            continue
        seen.add(candidate)
        if not config.use_mock and not config.api_key_for(provider):
            logger.debug("Skipping %s: no API key configured", candidate)
            continue
        until = cooldowns.get(str(candidate)) or cooldowns.get(provider)
        if until is not None and until > current:
            logger.info("Skipping %s: cooling down until %s", candidate, until.isoformat())
            continue
        candidates.append(candidate)

    if not candidates:
        env_vars = sorted({config.settings_for(p).api_key_env for p, _ in config.routes})
        raise ConfigurationError(
            "No eligible provider in the fallback chain",
            hint=f"Set one of {', '.join(env_vars)} or wait for cooldowns to pass.",
        )
    return FallbackPlan(candidates)


@dataclass(frozen=True)
class AttemptRecord:
    """Outcome of one adapter call."""

    candidate: Candidate
    message_count: int
    prompt_tokens_estimate: int
    elapsed_ms: int
    error: ProviderError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None


@dataclass(frozen=True)
class GenerationResult:
    """A successful generation plus the trail of attempts that led to it."""

    response: CanonicalResponse
    provider: str
    model: str
    attempts: tuple[AttemptRecord, ...]
    messages_sent: tuple[Message, ...]

    @property
    def text(self) -> str | None:
        return self.response.text

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        return self.response.tool_calls

    @property
    def rate_limits(self) -> dict[str, datetime]:
        """Latest ``retry_after`` per provider that hit a quota during this run."""
        limits: dict[str, datetime] = {}
        for attempt in self.attempts:
            if isinstance(attempt.error, RateLimitError) and attempt.error.retry_after:
                limits[attempt.candidate.provider] = attempt.error.retry_after
        return limits


@dataclass(frozen=True)
class Attempting:
    candidate: Candidate
    messages: tuple[Message, ...]
    options: CompactionOptions
    compactions: int = 0


@dataclass(frozen=True)
class Succeeded:
    result: GenerationResult


@dataclass(frozen=True)
class Exhausted:
    last_error: ProviderError


State = Attempting | Succeeded | Exhausted


def _reduced(after: Sequence[Message], before: Sequence[Message]) -> bool:
    return len(after) < len(before) or estimate_tokens(after) < estimate_tokens(before)


def _attempt_record(
    state: Attempting, started: float, error: ProviderError | None
) -> AttemptRecord:
    return AttemptRecord(
        candidate=state.candidate,
        message_count=len(state.messages),
        prompt_tokens_estimate=estimate_tokens(state.messages),
        elapsed_ms=int((time.monotonic() - started) * 1000),
        error=error,
    )


def _errors(attempts: Sequence[AttemptRecord]) -> list[ProviderError]:
    return [a.error for a in attempts if a.error is not None]


class FallbackOrchestrator:
    """Run one request through a FallbackPlan.

    ``providers`` maps provider names to adapters. ``settings`` supplies each
    provider's context budget for pre-flight compaction; providers without
    settings use ``compaction`` as given.
    """

    def __init__(
        self,
        providers: Mapping[str, ChatProvider],
        *,
        settings: Mapping[str, ProviderSettings] | None = None,
        compaction: CompactionOptions | None = None,
        policy: FallbackPolicy | None = None,
    ) -> None:
        self.providers = providers
        self.settings = settings or {}
        self.compaction = compaction or CompactionOptions()
        self.policy = policy or FallbackPolicy()

    def options_for(self, candidate: Candidate) -> CompactionOptions:
        """Compaction options bounded by *candidate*'s context budget."""
        settings = self.settings.get(candidate.provider)
        if settings is None:
            return self.compaction
        target = settings.context_tokens
        if self.compaction.target_tokens is not None:
            target = min(target, self.compaction.target_tokens)
        return replace(self.compaction, target_tokens=target)

    def _begin(self, candidate: Candidate, original: tuple[Message, ...]) -> Attempting:
        options = self.options_for(candidate)
        return Attempting(candidate, tuple(compact(original, options)), options)

    async def run(
        self,
        plan: FallbackPlan,
        messages: Sequence[Message],
        params: GenerationParams | None = None,
    ) -> GenerationResult:
        """Try candidates in order until one succeeds.

        Raises:
            FallbackExhaustedError: every candidate failed, or the deadline
                passed.
        """
        original = tuple(messages)
        if not original:
            raise ValueError("messages must not be empty")
        params = params or GenerationParams()
        attempts: list[AttemptRecord] = []

        state: State = self._begin(plan.current, original)
        try:
            async with asyncio.timeout(self.policy.deadline_s):
                while isinstance(state, Attempting):
                    state = await self._step(state, plan, params, original, attempts)
        except TimeoutError as e:
            last = ProviderError(
                f"Fallback deadline of {self.policy.deadline_s}s exceeded",
                kind=ErrorKind.TRANSPORT,
                provider=plan.current.provider,
                model=plan.current.model,
            )
            raise FallbackExhaustedError(
                last, attempts=len(attempts), errors=_errors(attempts)
            ) from e

        if isinstance(state, Exhausted):
            logger.warning(
                "Fallback exhausted after %d attempt(s): %s",
                len(attempts),
                state.last_error.kind.value,
            )
            raise FallbackExhaustedError(
                state.last_error, attempts=len(attempts), errors=_errors(attempts)
            )
        return state.result

    async def _step(
        self,
        state: Attempting,
        plan: FallbackPlan,
        params: GenerationParams,
        original: tuple[Message, ...],
        attempts: list[AttemptRecord],
    ) -> State:
        candidate = state.candidate
        started = time.monotonic()
        try:
            response = await self._send(candidate, state.messages, params)
        except ProviderError as err:
            attempts.append(_attempt_record(state, started, err))
            logger.warning(
                "Attempt %d on %s failed (%s): %s",
                len(attempts),
                candidate,
                err.kind.value,
                err.message,
            )
            return self._after_failure(state, plan, original, err)

        attempts.append(_attempt_record(state, started, None))
        logger.debug("Attempt %d on %s succeeded", len(attempts), candidate)
        return Succeeded(
            GenerationResult(
                response=response,
                provider=candidate.provider,
                model=candidate.model,
                attempts=tuple(attempts),
                messages_sent=state.messages,
            )
        )

    def _after_failure(
        self,
        state: Attempting,
        plan: FallbackPlan,
        original: tuple[Message, ...],
        err: ProviderError,
    ) -> State:
        decision = decide(
            err.kind,
            policy=self.policy,
            is_last=plan.is_last,
            compactions_used=state.compactions,
        )
        if decision is Decision.RETRY_COMPACTED:
            options = state.options.shrink(state.messages, self.policy.shrink_factor)
            smaller = tuple(compact(state.messages, options))
            if _reduced(smaller, state.messages):
                logger.info(
                    "Retrying %s with a compacted conversation (%d -> %d messages)",
                    state.candidate,
                    len(state.messages),
                    len(smaller),
                )
                return Attempting(
                    state.candidate, smaller, options, state.compactions + 1
                )
            decision = Decision.EXHAUST if plan.is_last else Decision.ADVANCE

        if decision is Decision.EXHAUST:
            return Exhausted(err)

        nxt = plan.advance()
        if nxt is None:
            return Exhausted(err)
        logger.info("Falling back from %s to %s", state.candidate, nxt)
        return self._begin(nxt, original)

    async def _send(
        self,
        candidate: Candidate,
        messages: tuple[Message, ...],
        params: GenerationParams,
    ) -> CanonicalResponse:
        provider = self.providers.get(candidate.provider)
        if provider is None:
            raise ProviderError(
                f"No adapter configured for {candidate.provider}",
                kind=ErrorKind.MODEL_UNAVAILABLE,
                provider=candidate.provider,
                model=candidate.model,
            )
        request = ProviderRequest(model=candidate.model, messages=messages, params=params)
        timeout_s = self.policy.attempt_timeout_s
        try:
            async with asyncio.timeout(timeout_s):
                return await provider.send(request)
        except TimeoutError as e:
            raise ProviderError(
                f"{candidate} did not answer within {timeout_s}s",
                kind=ErrorKind.TRANSPORT,
                provider=candidate.provider,
                model=candidate.model,
            ) from e
