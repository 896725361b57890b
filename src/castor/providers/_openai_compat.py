"""Shared adapter for OpenAI-compatible chat-completions backends.

OpenRouter, Together and NVIDIA all speak the chat-completions wire shape, so
one adapter drives them through ``openai.AsyncOpenAI`` with a custom
``base_url``. Subclasses only pick their name, default settings and error
classifier.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import replace
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from castor.audit import attempt_record, emit
from castor.config import DEFAULT_PROVIDERS, ProviderSettings
from castor.errors import ConfigurationError, ErrorKind, ProviderError
from castor.providers._errors import (
    Classifier,
    classify_openrouter,
    make_provider_error,
    wrap_provider_error,
)
from castor.toolcalls import normalize_message

if TYPE_CHECKING:
    from castor.audit import AuditRecord, AuditSink
    from castor.providers.models import CanonicalResponse, Message, ProviderRequest

logger = logging.getLogger(__name__)


def _to_chat_message(message: Message, *, tools: bool) -> dict[str, Any]:
    """Render one Message in chat-completions shape.

    Without tool support, tool results become user turns and assistant tool
    calls are dropped, since such backends reject the ``tool`` role.
    """
    if message.role == "tool":
        if not tools:
            label = f" ({message.name})" if message.name else ""
            return {"role": "user", "content": f"Tool result{label}: {message.content}"}
        entry: dict[str, Any] = {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "content": message.content,
        }
        return entry

    entry = {"role": message.role, "content": message.content}
    if message.name and message.role == "user":
        entry["name"] = message.name
    if message.role == "assistant" and message.tool_calls and tools:
        entry["tool_calls"] = [call.to_openai() for call in message.tool_calls]
        if not message.content:
            entry["content"] = None
    return entry


def _as_dict(completion: Any) -> Any:
    if isinstance(completion, Mapping):
        return dict(completion)
    dump = getattr(completion, "model_dump", None)
    if callable(dump):
        return dump()
    return None


def _usage(raw: Mapping[str, Any]) -> dict[str, int]:
    usage_raw = raw.get("usage")
    if not isinstance(usage_raw, Mapping):
        return {}
    usage: dict[str, int] = {}
    for source, target in (
        ("prompt_tokens", "input_tokens"),
        ("completion_tokens", "output_tokens"),
        ("total_tokens", "total_tokens"),
    ):
        value = usage_raw.get(source)
        if isinstance(value, int):
            usage[target] = value
    return usage


class OpenAICompatibleProvider:
    """Chat-completions provider over ``openai.AsyncOpenAI``."""

    name = "openrouter"
    classify: Classifier = staticmethod(classify_openrouter)

    def __init__(
        self,
        api_key: str,
        *,
        settings: ProviderSettings | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        """Initialize with an API key and backend settings."""
        self.api_key = api_key
        self.settings = settings or DEFAULT_PROVIDERS[self.name]
        self.audit = audit
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the SDK client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise ConfigurationError(
                    "openai package not installed",
                    hint="pip install openai",
                ) from e
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.settings.base_url,
                default_headers=dict(self.settings.extra_headers) or None,
                max_retries=0,
            )
        return self._client

    @property
    def endpoint(self) -> str:
        """The chat-completions URL, for audit records."""
        return f"{(self.settings.base_url or '').rstrip('/')}/chat/completions"

    def build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        """Map a canonical request to chat-completions keyword arguments."""
        params = request.params
        native_tools = self.settings.supports_tools(request.model)
        tools = bool(params.tools) and native_tools
        if params.tools and not tools:
            logger.debug(
                "%s model %s does not accept tools; sending without them",
                self.name,
                request.model,
            )

        max_tokens = min(params.max_tokens, self.settings.max_output_tokens)
        if max_tokens < params.max_tokens:
            logger.debug(
                "Clamped max_tokens %d -> %d for %s",
                params.max_tokens,
                max_tokens,
                self.name,
            )

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [
                _to_chat_message(m, tools=native_tools) for m in request.messages
            ],
            "temperature": params.temperature,
            "top_p": params.top_p,
            "max_tokens": max_tokens,
        }
        if params.stop:
            payload["stop"] = list(params.stop)
        if tools and params.tools:
            payload["tools"] = [tool.to_openai() for tool in params.tools]
            if params.tool_choice is not None:
                payload["tool_choice"] = params.tool_choice
        return payload

    async def send(self, request: ProviderRequest) -> CanonicalResponse:
        """Send one chat-completions request and normalize the reply."""
        client = self._get_client()
        payload = self.build_payload(request)
        started = time.monotonic()
        raw: Any = None
        result: CanonicalResponse | None = None
        error: dict[str, Any] | None = None
        try:
            try:
                completion = await client.chat.completions.create(**payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise wrap_provider_error(
                    e,
                    provider=self.name,
                    model=request.model,
                    classify=self.classify,
                    api_key=self.api_key,
                    key_env=self.settings.api_key_env,
                ) from e
            raw = _as_dict(completion)
            result = self._parse(raw, request.model)
            return result
        except asyncio.CancelledError:
            error = {"kind": "cancelled", "message": "request cancelled"}
            raise
        except ProviderError as err:
            error = {
                "kind": err.kind.value,
                "message": err.message,
                "status_code": err.status_code,
            }
            raise
        finally:
            await emit(
                self.audit,
                self._audit_record(request, payload, raw, result, error, started),
            )

    def _malformed(self, model: str, reason: str, raw: Any) -> ProviderError:
        return make_provider_error(
            ErrorKind.MALFORMED_RESPONSE,
            reason,
            provider=self.name,
            model=model,
            body=json.dumps(raw, ensure_ascii=False, default=str),
            api_key=self.api_key,
        )

    def _parse(self, raw: Any, model: str) -> CanonicalResponse:
        if not isinstance(raw, Mapping):
            raise self._malformed(model, "response is not a JSON object", raw)

        # Some gateways report upstream failures inside a 200 body.
        upstream = raw.get("error")
        if isinstance(upstream, Mapping):
            code = upstream.get("code")
            status_code = code if isinstance(code, int) else None
            text = str(upstream.get("message") or json.dumps(upstream, default=str))
            raise make_provider_error(
                self.classify(status_code, text),
                text,
                provider=self.name,
                model=model,
                status_code=status_code,
                body=json.dumps(upstream, ensure_ascii=False, default=str),
                api_key=self.api_key,
                key_env=self.settings.api_key_env,
            )

        choices = raw.get("choices")
        if not isinstance(choices, list) or not choices:
            raise self._malformed(model, "response has no choices", raw)
        choice = choices[0]
        if not isinstance(choice, Mapping):
            raise self._malformed(model, "first choice is not an object", raw)

        response = normalize_message(
            choice.get("message"),
            parse_text=self.settings.parse_text_tool_calls,
        )
        if response.is_empty:
            raise self._malformed(
                model, "response carried neither text nor a tool call", raw
            )
        finish_reason = choice.get("finish_reason")
        return replace(
            response,
            usage=_usage(raw),
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        )

    def _audit_record(
        self,
        request: ProviderRequest,
        payload: dict[str, Any],
        raw: Any,
        result: CanonicalResponse | None,
        error: dict[str, Any] | None,
        started: float,
    ) -> AuditRecord:
        return attempt_record(
            endpoint=self.endpoint,
            provider=self.name,
            model=request.model,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                **self.settings.extra_headers,
            },
            body=payload,
            response=raw,
            messages=request.messages,
            result=result,
            error=error,
            started=started,
            secret=self.api_key,
        )

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.close()
