"""Conversion from host messages to the OpenAI conversation model.

Host payloads are parsed into typed parts once, in ``parse_part``; the rest
of the pipeline only ever sees ``TextPart``, ``ToolCallPart`` and
``ToolResultPart``.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from llm_gateway.types import (
    ChatMessage,
    ContentPart,
    ConversationMessage,
    TextPart,
    ToolCallPart,
    ToolCallRequest,
    ToolResultBinding,
    ToolResultPart,
    dumps_compact,
)

_logger = logging.getLogger(__name__)

_HOST_ROLES = ("system", "user", "assistant")


# ---------------------------------------------------------------------------
# Boundary parsing
# ---------------------------------------------------------------------------

def parse_part(raw: Any) -> ContentPart | None:
    """Classify one host content part.

    Accepts typed parts unchanged, plain strings, and dicts in either the
    host's camelCase shape (``callId``) or snake_case.
    """
    if isinstance(raw, (TextPart, ToolCallPart, ToolResultPart)):
        return raw
    if isinstance(raw, str):
        return TextPart(raw)
    if not isinstance(raw, dict):
        _logger.debug("Ignoring unsupported content part: %r", type(raw).__name__)
        return None

    call_id = raw.get("callId", raw.get("call_id"))
    if call_id is not None and "name" in raw and "input" in raw:
        tool_input = raw["input"] if isinstance(raw["input"], dict) else {}
        return ToolCallPart(call_id=str(call_id), name=str(raw["name"]), input=tool_input)
    if call_id is not None and "content" in raw and "name" not in raw:
        return ToolResultPart(call_id=str(call_id), content=raw["content"])
    for key in ("value", "text"):
        if isinstance(raw.get(key), str):
            return TextPart(raw[key])

    _logger.debug("Ignoring unrecognized content part with keys %s", sorted(raw))
    return None


def parse_message(raw: dict[str, Any]) -> ChatMessage:
    """Build a ``ChatMessage`` from a host dict (``role`` + ``content``)."""
    role = str(raw.get("role", "user")).lower()
    if role not in _HOST_ROLES:
        role = "user"
    content = raw.get("content", [])
    if isinstance(content, str) or not isinstance(content, list):
        content = [content]
    parts = [p for p in (parse_part(c) for c in content) if p is not None]
    return ChatMessage(role=role, parts=parts)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------

def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces: list[str] = []
        for item in content:
            if isinstance(item, TextPart):
                pieces.append(item.value)
            elif isinstance(item, str):
                pieces.append(item)
            else:
                pieces.append(dumps_compact(item))
        return "".join(pieces)
    return dumps_compact(content)


def convert_message(message: ChatMessage) -> list[ConversationMessage]:
    """Convert one host message; it may expand into several."""
    text = ""
    tool_calls: list[ToolCallRequest] = []
    tool_results: list[ToolResultPart] = []

    for part in message.parts:
        if isinstance(part, TextPart):
            text += part.value
        elif isinstance(part, ToolCallPart):
            _logger.debug("Found tool call: callId=%s, name=%s", part.call_id, part.name)
            tool_calls.append(
                ToolCallRequest(
                    id=part.call_id, name=part.name, arguments=dumps_compact(part.input),
                ),
            )
        elif isinstance(part, ToolResultPart):
            _logger.debug("Found tool result: callId=%s", part.call_id)
            tool_results.append(part)

    if tool_calls:
        return [
            ConversationMessage(
                role="assistant", content=text or None, tool_calls=tuple(tool_calls),
            ),
        ]
    if tool_results:
        converted = [
            ConversationMessage(
                role="tool",
                tool_result=ToolResultBinding(
                    call_id=r.call_id, content=_result_text(r.content),
                ),
            )
            for r in tool_results
        ]
        if text:
            converted.append(ConversationMessage(role="user", content=text))
        return converted
    if text:
        return [ConversationMessage(role=message.role, content=text)]
    return []


def convert_messages(messages: Iterable[ChatMessage]) -> list[ConversationMessage]:
    converted: list[ConversationMessage] = []
    for message in messages:
        converted.extend(convert_message(message))
    return converted


def drop_orphan_tool_results(
    messages: Sequence[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Remove tool messages whose call id no earlier assistant message issued.

    Servers reject such messages, and truncation can orphan them.
    """
    issued: set[str] = set()
    kept: list[dict[str, Any]] = []
    for message in messages:
        for tc in message.get("tool_calls") or []:
            issued.add(tc.get("id", ""))
        if message.get("role") == "tool" and message.get("tool_call_id") not in issued:
            _logger.warning(
                "Dropping tool result for unknown call id %s", message.get("tool_call_id"),
            )
            continue
        kept.append(message)
    return kept
