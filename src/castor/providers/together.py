"""Together provider implementation."""

from __future__ import annotations

from castor.providers._errors import classify_together
from castor.providers._openai_compat import OpenAICompatibleProvider


class TogetherProvider(OpenAICompatibleProvider):
    """Together chat-completions provider (output capped at 1500 tokens)."""

    name = "together"
    classify = staticmethod(classify_together)
