"""Provider implementations.

Concrete adapters are imported lazily by name (see :func:`provider_class`)
so importing the data model never pulls in an SDK.
"""

from __future__ import annotations

from importlib import import_module

from .base import ChatProvider
from .models import (
    CanonicalResponse,
    GenerationParams,
    Message,
    ProviderRequest,
    ToolCall,
    ToolSpec,
)

_ADAPTERS: dict[str, tuple[str, str]] = {
    "openrouter": ("castor.providers.openrouter", "OpenRouterProvider"),
    "gemini": ("castor.providers.gemini", "GeminiProvider"),
    "together": ("castor.providers.together", "TogetherProvider"),
    "nvidia": ("castor.providers.nvidia", "NvidiaProvider"),
}


def provider_class(name: str) -> type:
    """Return the adapter class registered for *name*."""
    try:
        module_name, attr = _ADAPTERS[name]
    except KeyError as e:
        raise KeyError(f"No adapter registered for provider {name!r}") from e
    return getattr(import_module(module_name), attr)  # type: ignore[no-any-return]


__all__ = [
    "CanonicalResponse",
    "ChatProvider",
    "GenerationParams",
    "Message",
    "ProviderRequest",
    "ToolCall",
    "ToolSpec",
    "provider_class",
]
