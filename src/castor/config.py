"""Configuration: frozen Config plus the per-provider settings registry."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
import os
from typing import Literal

from dotenv import load_dotenv

from castor.compaction import CompactionOptions
from castor.errors import ConfigurationError
from castor.retry import FallbackPolicy

load_dotenv()

ProviderName = Literal["openrouter", "gemini", "together", "nvidia"]
Route = tuple[str, str]

FALLBACK_ENV_VAR = "CASTOR_FALLBACK"

# Model-name fragments that accept tool definitions on OpenRouter.
OPENROUTER_TOOL_MODELS: tuple[str, ...] = (
    "anthropic/claude-3-opus",
    "anthropic/claude-3-sonnet",
    "anthropic/claude-3-haiku",
    "openai/gpt-4o",
    "openai/gpt-4-turbo",
    "openai/gpt-4",
    "openai/gpt-3.5-turbo",
    "google/gemini-1.5-pro",
    "google/gemini-1.5-flash",
    "gemini-2.0-flash-lite",
    "gemini-2.0-flash",
    "meta-llama/llama-3.3-70b-instruct",
    "deepseek-ai/deepseek-r1-distill-llama-70b",
)


@dataclass(frozen=True)
class ProviderSettings:
    """Static facts about one backend.

    ``tool_models`` of None means every model accepts tools; otherwise a
    model accepts tools when its name contains one of the fragments
    (case-insensitive).
    """

    name: str
    api_key_env: str
    max_output_tokens: int
    context_tokens: int
    base_url: str | None = None
    tool_models: tuple[str, ...] | None = None
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    parse_text_tool_calls: bool = False

    def __post_init__(self) -> None:
        """Validate numeric limits."""
        if self.max_output_tokens < 1:
            raise ConfigurationError(
                f"{self.name}: max_output_tokens must be ≥ 1, got {self.max_output_tokens}"
            )
        if self.context_tokens < 1:
            raise ConfigurationError(
                f"{self.name}: context_tokens must be ≥ 1, got {self.context_tokens}"
            )

    def supports_tools(self, model: str) -> bool:
        """Whether *model* on this backend accepts tool definitions."""
        if self.tool_models is None:
            return True
        lowered = model.lower()
        return any(fragment.lower() in lowered for fragment in self.tool_models)


DEFAULT_PROVIDERS: Mapping[str, ProviderSettings] = {
    "openrouter": ProviderSettings(
        name="openrouter",
        api_key_env="OPENROUTER_API_KEY",
        base_url="https://openrouter.ai/api/v1",
        max_output_tokens=4096,
        context_tokens=24_000,
        tool_models=OPENROUTER_TOOL_MODELS,
        extra_headers={"X-Title": "castor"},
    ),
    "gemini": ProviderSettings(
        name="gemini",
        api_key_env="GEMINI_API_KEY",
        max_output_tokens=8192,
        context_tokens=32_000,
    ),
    "together": ProviderSettings(
        name="together",
        api_key_env="TOGETHER_API_KEY",
        base_url="https://api.together.xyz/v1",
        max_output_tokens=1500,
        context_tokens=6000,
    ),
    "nvidia": ProviderSettings(
        name="nvidia",
        api_key_env="NVIDIA_API_KEY",
        base_url="https://integrate.api.nvidia.com/v1",
        max_output_tokens=1500,
        context_tokens=6000,
        parse_text_tool_calls=True,
    ),
}

DEFAULT_FALLBACKS: tuple[Route, ...] = (
    ("gemini", "gemini-2.0-flash"),
    ("together", "meta-llama/Llama-3.3-70B-Instruct-Turbo-Free"),
    ("nvidia", "meta/llama-3.3-70b-instruct"),
)


def parse_route(value: str) -> Route:
    """Parse ``provider:model``; the model part may itself contain colons."""
    provider, sep, model = value.strip().partition(":")
    provider = provider.strip().lower()
    model = model.strip()
    if not sep or not provider or not model:
        raise ConfigurationError(
            f"Invalid route: {value!r}",
            hint="Use 'provider:model', e.g. 'gemini:gemini-2.0-flash'.",
        )
    return provider, model


def parse_routes(value: str) -> tuple[Route, ...]:
    """Parse a comma-separated list of ``provider:model`` routes."""
    return tuple(parse_route(item) for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Config:
    """Immutable configuration for one Castor deployment.

    The primary provider and model are required. The fallback chain defaults
    to ``CASTOR_FALLBACK`` when set, else a built-in chain. API keys are
    auto-resolved from each provider's environment variable.

    Example:
        config = Config(provider="openrouter", model="anthropic/claude-3-haiku")
        # Keys come from OPENROUTER_API_KEY, GEMINI_API_KEY, ...
    """

    provider: ProviderName
    model: str
    fallbacks: tuple[Route, ...] | None = None
    #: Explicit keys by provider name; missing entries are read from the env.
    api_keys: Mapping[str, str | None] = field(default_factory=dict)
    use_mock: bool = False
    providers: Mapping[str, ProviderSettings] = field(
        default_factory=lambda: dict(DEFAULT_PROVIDERS)
    )
    compaction: CompactionOptions = field(default_factory=CompactionOptions)
    policy: FallbackPolicy = field(default_factory=FallbackPolicy)
    audit_log_path: str | None = None
    #: Sent as ``HTTP-Referer`` to OpenRouter when set.
    app_url: str | None = None

    def __post_init__(self) -> None:
        """Resolve the fallback chain and API keys, then validate."""
        if self.provider not in self.providers:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint=f"Supported providers: {', '.join(sorted(self.providers))}",
            )
        if not self.model:
            raise ConfigurationError("model must be a non-empty string")

        fallbacks = self.fallbacks
        if fallbacks is None:
            env_value = os.environ.get(FALLBACK_ENV_VAR)
            fallbacks = parse_routes(env_value) if env_value else DEFAULT_FALLBACKS
        fallbacks = tuple(tuple(route) for route in fallbacks)  # type: ignore[misc]
        for name, _model in fallbacks:
            if name not in self.providers:
                raise ConfigurationError(
                    f"Unknown provider in fallback chain: {name!r}",
                    hint=f"Supported providers: {', '.join(sorted(self.providers))}",
                )
        object.__setattr__(self, "fallbacks", fallbacks)

        resolved: dict[str, str | None] = {}
        for name, settings in self.providers.items():
            key = self.api_keys.get(name)
            if key is None and not self.use_mock:
                key = os.environ.get(settings.api_key_env) or None
            resolved[name] = key
        object.__setattr__(self, "api_keys", resolved)

    @property
    def routes(self) -> tuple[Route, ...]:
        """The primary route followed by the fallback chain, in order."""
        return ((self.provider, self.model), *(self.fallbacks or ()))

    def api_key_for(self, provider: str) -> str | None:
        """Return the resolved API key for *provider*, if any."""
        return self.api_keys.get(provider)

    def settings_for(self, provider: str) -> ProviderSettings:
        """Return the settings for *provider*, with deployment headers applied."""
        try:
            settings = self.providers[provider]
        except KeyError as e:
            raise ConfigurationError(f"Unknown provider: {provider!r}") from e
        if provider == "openrouter" and self.app_url:
            headers = {**settings.extra_headers, "HTTP-Referer": self.app_url}
            settings = replace(settings, extra_headers=headers)
        return settings

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        keys = {name: "[REDACTED]" for name, key in self.api_keys.items() if key}
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"fallbacks={self.fallbacks!r}, api_keys={keys!r}, "
            f"use_mock={self.use_mock})"
        )

    __repr__ = __str__
