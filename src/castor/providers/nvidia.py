"""NVIDIA provider implementation.

Some NVIDIA-hosted models answer tool requests with free text such as
``<function>search_web{"query": "weather"}<br></function>`` instead of a
structured ``tool_calls`` array; the adapter recovers those calls.
"""

from __future__ import annotations

from castor.providers._errors import classify_nvidia
from castor.providers._openai_compat import OpenAICompatibleProvider


class NvidiaProvider(OpenAICompatibleProvider):
    """NVIDIA chat-completions provider (output capped at 1500 tokens)."""

    name = "nvidia"
    classify = staticmethod(classify_nvidia)
