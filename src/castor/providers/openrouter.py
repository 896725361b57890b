"""OpenRouter provider implementation."""

from __future__ import annotations

from castor.providers._errors import classify_openrouter
from castor.providers._openai_compat import OpenAICompatibleProvider


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter chat-completions provider.

    Only models in the configured tool-capable list receive tool definitions.
    A 402 (credits exhausted) is treated like a quota so the chain moves on.
    """

    name = "openrouter"
    classify = staticmethod(classify_openrouter)
