"""Castor: one chat-completion request, several incompatible LLM backends.

Public API:
    - generate(): Run a conversation through the configured fallback chain
    - Config: Configuration dataclass
    - FallbackOrchestrator / build_plan: Lower-level orchestration
    - compact(): Context compaction
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import datetime
import logging
from typing import TYPE_CHECKING

from castor.audit import JsonlAuditSink, MemoryAuditSink, NullAuditSink
from castor.compaction import CompactionOptions, compact, estimate_tokens
from castor.config import Config, ProviderSettings
from castor.errors import (
    CastorError,
    ConfigurationError,
    ErrorKind,
    FallbackExhaustedError,
    ProviderError,
    RateLimitError,
)
from castor.fallback import (
    Candidate,
    FallbackOrchestrator,
    FallbackPlan,
    GenerationResult,
    build_plan,
)
from castor.providers import provider_class
from castor.providers.models import GenerationParams, Message, ToolCall, ToolSpec
from castor.retry import FallbackPolicy
from castor.toolcalls import normalize_message, normalize_tool_calls

if TYPE_CHECKING:
    from castor.audit import AuditSink
    from castor.providers.base import ChatProvider

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


async def generate(
    messages: Sequence[Message],
    *,
    config: Config,
    params: GenerationParams | None = None,
    tools: Sequence[ToolSpec] | None = None,
    cooldowns: Mapping[str, datetime] | None = None,
    audit: AuditSink | None = None,
) -> GenerationResult:
    """Generate a reply, falling back across providers as needed.

    Args:
        messages: The conversation, oldest first, ending with a user turn.
        config: Configuration naming the primary route and fallbacks.
        params: Sampling parameters; defaults follow GenerationParams.
        tools: Tool definitions offered to the model (overrides params.tools).
        cooldowns: Provider (or ``provider:model``) -> time before which it
            must not be tried, typically built from ``result.rate_limits``.
        audit: Sink for per-attempt audit records; defaults to a JSON lines
            file when ``config.audit_log_path`` is set.

    Returns:
        GenerationResult with the canonical response and attempt trail.

    Example:
        config = Config(provider="openrouter", model="anthropic/claude-3-haiku")
        result = await generate([Message.user("Hi!")], config=config)
        print(result.text)
    """
    params = params or GenerationParams()
    if tools is not None:
        params = replace(params, tools=tuple(tools))
    if audit is None:
        audit = (
            JsonlAuditSink(config.audit_log_path)
            if config.audit_log_path
            else NullAuditSink()
        )

    plan = build_plan(config, cooldowns=cooldowns)
    providers = _get_providers(config, plan, audit)
    orchestrator = FallbackOrchestrator(
        providers,
        settings={name: config.settings_for(name) for name in providers},
        compaction=config.compaction,
        policy=config.policy,
    )

    try:
        return await orchestrator.run(plan, messages, params)
    finally:
        for name, provider in providers.items():
            aclose = getattr(provider, "aclose", None)
            if not callable(aclose):
                continue
            try:
                await aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Cleanup should never mask the primary failure.
                logger.warning("Provider cleanup failed for %s: %s", name, exc)


def _get_providers(
    config: Config, plan: FallbackPlan, audit: AuditSink
) -> dict[str, ChatProvider]:
    """Build one adapter per provider named in *plan*."""
    providers: dict[str, ChatProvider] = {}
    for candidate in plan:
        name = candidate.provider
        if name in providers:
            continue
        if config.use_mock:
            from castor.providers.mock import MockProvider

            providers[name] = MockProvider(name, audit=audit)
            continue

        api_key = config.api_key_for(name)
        if not api_key:
            settings = config.settings_for(name)
            raise ConfigurationError(
                f"api_key required for {name}",
                hint=f"Set {settings.api_key_env} or pass Config(api_keys=...).",
            )
        cls = provider_class(name)
        providers[name] = cls(api_key, settings=config.settings_for(name), audit=audit)
    return providers


# Re-export for convenience
__all__ = [
    "Candidate",
    "CastorError",
    "CompactionOptions",
    "Config",
    "ConfigurationError",
    "ErrorKind",
    "FallbackExhaustedError",
    "FallbackOrchestrator",
    "FallbackPlan",
    "FallbackPolicy",
    "GenerationParams",
    "GenerationResult",
    "JsonlAuditSink",
    "MemoryAuditSink",
    "Message",
    "ProviderError",
    "ProviderSettings",
    "RateLimitError",
    "ToolCall",
    "ToolSpec",
    "build_plan",
    "compact",
    "estimate_tokens",
    "generate",
    "normalize_message",
    "normalize_tool_calls",
]
