"""Tool-call normalization for provider messages.

Structured ``tool_calls`` arrays pass through. Some backends instead embed
calls in the visible text as ``<function>NAME{ARGS}<br></function>`` or loose
variants of it; those are recovered by an ordered list of increasingly
permissive strategies. The first strategy that yields at least one call wins.
A failed parse degrades to "no tool call, keep the raw text" and never raises.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import json
import logging
import re
from typing import Any
import uuid

from castor.providers.models import CanonicalResponse, ToolCall

logger = logging.getLogger(__name__)

_EXACT_RE = re.compile(r"<function>([A-Za-z0-9_]+)(\{.*?\})<br></function>", re.DOTALL)
_TOLERANT_RE = re.compile(
    r"<function>\s*([A-Za-z0-9_]+)\s*(\{.*?\})\s*(?:<br\s*/?>)?\s*</function>",
    re.DOTALL,
)
_LOOSE_RE = re.compile(r"<function>(.*?)</function>", re.DOTALL)
_LEADING_NAME_RE = re.compile(r"\s*([A-Za-z_][A-Za-z0-9_]*)")
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_BR_RE = re.compile(r"<br\s*/?>")
_KV_RE = re.compile(r'"?([A-Za-z0-9_]+)"?\s*:\s*"([^"]*)"')
_QUERY_RE = re.compile(r'query\s*[:=]\s*"([^"]*)"')

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_SINGLE_QUOTED_KEY_RE = re.compile(r"([{,]\s*)'([^']*)'\s*:")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
_SINGLE_QUOTED_VALUE_RE = re.compile(r":\s*'([^']*)'")


@dataclass(frozen=True)
class _Match:
    name: str
    arguments: dict[str, Any]
    source: str


Strategy = Callable[[str], list[_Match] | None]


def _load_object(raw: str) -> dict[str, Any] | None:
    try:
        value = json.loads(raw)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def repair_json(raw: str) -> str:
    """Apply cheap textual fixes to almost-JSON emitted by a model."""
    text = raw.replace("\r", " ").replace("\n", " ")
    text = text.replace('\\"', '"')
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    text = _SINGLE_QUOTED_KEY_RE.sub(r'\1"\2":', text)
    text = _BARE_KEY_RE.sub(r'\1"\2":', text)
    text = _SINGLE_QUOTED_VALUE_RE.sub(r': "\1"', text)
    return text.replace('"{', "{").replace('}"', "}")


def _scrape_pairs(raw: str) -> dict[str, Any] | None:
    pairs = {key: value for key, value in _KV_RE.findall(raw)}
    return pairs or None


def _exact_format(text: str) -> list[_Match] | None:
    found = []
    for m in _EXACT_RE.finditer(text):
        args = _load_object(m.group(2))
        if args is not None:
            found.append(_Match(m.group(1), args, m.group(0)))
    return found or None


def _tolerant_with_repair(text: str) -> list[_Match] | None:
    found = []
    for m in _TOLERANT_RE.finditer(text):
        raw = m.group(2)
        args = _load_object(raw)
        if args is None:
            args = _load_object(repair_json(raw))
        if args is not None:
            found.append(_Match(m.group(1), args, m.group(0)))
    return found or None


def _tolerant_with_pair_scraping(text: str) -> list[_Match] | None:
    found = []
    for m in _TOLERANT_RE.finditer(text):
        args = _scrape_pairs(m.group(2))
        if args is not None:
            found.append(_Match(m.group(1), args, m.group(0)))
    return found or None


def _loose_tag(text: str) -> list[_Match] | None:
    found = []
    for m in _LOOSE_RE.finditer(text):
        inner = _BR_RE.sub(" ", m.group(1)).strip()
        name_match = _LEADING_NAME_RE.match(inner)
        if name_match is None:
            continue
        args: dict[str, Any] | None = None
        object_match = _OBJECT_RE.search(inner)
        if object_match is not None:
            raw = object_match.group(0)
            args = (
                _load_object(raw)
                or _load_object(repair_json(raw))
                or _scrape_pairs(raw)
            )
        else:
            query = _QUERY_RE.search(inner)
            if query is not None:
                args = {"query": query.group(1)}
        found.append(_Match(name_match.group(1), args or {}, m.group(0)))
    return found or None


STRATEGIES: tuple[Strategy, ...] = (
    _exact_format,
    _tolerant_with_repair,
    _tolerant_with_pair_scraping,
    _loose_tag,
)


def new_call_id() -> str:
    """Return a synthetic tool-call id."""
    return f"call_{uuid.uuid4().hex[:24]}"


def _dump_arguments(arguments: Any) -> str:
    return json.dumps(arguments, ensure_ascii=False, separators=(",", ":"))


def extract_text_tool_calls(text: str) -> tuple[list[ToolCall], str]:
    """Recover tool calls embedded in *text*.

    Returns the calls and the text with every recognized call removed. When
    no strategy matches, the text is returned untouched.
    """
    if "<function>" not in text:
        return [], text
    for strategy in STRATEGIES:
        matches = strategy(text)
        if not matches:
            continue
        logger.debug(
            "Recovered %d text tool call(s) via %s", len(matches), strategy.__name__
        )
        remaining = text
        calls = []
        for match in matches:
            remaining = remaining.replace(match.source, "", 1)
            calls.append(
                ToolCall(
                    id=new_call_id(),
                    name=match.name,
                    arguments=_dump_arguments(match.arguments),
                )
            )
        return calls, remaining.strip()
    return [], text


def _structured_calls(raw_calls: Any) -> list[ToolCall]:
    if not isinstance(raw_calls, list):
        return []
    calls: list[ToolCall] = []
    for entry in raw_calls:
        if not isinstance(entry, Mapping):
            continue
        function = entry.get("function")
        if not isinstance(function, Mapping):
            continue
        name = function.get("name")
        if not isinstance(name, str) or not name:
            logger.debug("Skipping structured tool call without a function name")
            continue
        arguments = function.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            arguments = _dump_arguments(arguments)
        call_id = entry.get("id")
        if not isinstance(call_id, str) or not call_id:
            call_id = new_call_id()
        calls.append(ToolCall(id=call_id, name=name, arguments=arguments))
    return calls


def _content_text(content: Any) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part.get("text", "")
            for part in content
            if isinstance(part, Mapping) and isinstance(part.get("text"), str)
        ]
        return "".join(parts)
    return None


def normalize_message(
    raw_message: Any, *, parse_text: bool = True
) -> CanonicalResponse:
    """Normalize a chat-completions style message into text plus tool calls."""
    if not isinstance(raw_message, Mapping):
        return CanonicalResponse()

    text = _content_text(raw_message.get("content"))
    calls = _structured_calls(raw_message.get("tool_calls"))
    if not calls and parse_text and text:
        calls, text = extract_text_tool_calls(text)

    if text is not None:
        text = text.strip() or None
    return CanonicalResponse(text=text, tool_calls=tuple(calls))


def normalize_tool_calls(raw_message: Any, *, parse_text: bool = True) -> list[ToolCall]:
    """Return the canonical tool calls carried by *raw_message*."""
    return list(normalize_message(raw_message, parse_text=parse_text).tool_calls)
