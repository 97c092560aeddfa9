"""Shared data types for the gateway."""

from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Union

Role = Literal["system", "user", "assistant", "tool"]


# ---------------------------------------------------------------------------
# Host content parts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextPart:
    """Plain text, either from the host or streamed back to it."""

    value: str


@dataclass(frozen=True)
class ToolCallPart:
    """A tool invocation requested by the model."""

    call_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultPart:
    """The output of a tool, bound to the call that produced it."""

    call_id: str
    content: Any = ""


ContentPart = Union[TextPart, ToolCallPart, ToolResultPart]


@dataclass
class ChatMessage:
    """A host conversation message made of typed parts."""

    role: Literal["system", "user", "assistant"]
    parts: list[ContentPart] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.value for p in self.parts if isinstance(p, TextPart))


@dataclass(frozen=True)
class ToolDefinition:
    """A tool the model may call, described by a JSON schema."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] | None = None

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


# ---------------------------------------------------------------------------
# Conversation model (OpenAI wire shape)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolCallRequest:
    """One entry of an assistant message's ``tool_calls``."""

    id: str
    name: str
    arguments: str

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ToolResultBinding:
    call_id: str
    content: str


@dataclass(frozen=True)
class ConversationMessage:
    """A message in the outgoing request.

    Carries tool-call requests, a tool result, or plain text.  Assistant
    tool-call messages may keep accompanying text.
    """

    role: Role
    content: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_result: ToolResultBinding | None = None

    def __post_init__(self) -> None:
        if self.tool_calls and self.tool_result is not None:
            raise ValueError("message cannot carry both tool calls and a tool result")
        if self.tool_calls and self.role != "assistant":
            raise ValueError("only assistant messages carry tool calls")
        if (self.tool_result is not None) != (self.role == "tool"):
            raise ValueError("tool messages must carry exactly one tool result")

    def to_openai(self) -> dict[str, Any]:
        if self.tool_result is not None:
            return {
                "role": "tool",
                "tool_call_id": self.tool_result.call_id,
                "content": self.tool_result.content,
            }
        if self.tool_calls:
            return {
                "role": "assistant",
                "content": self.content or None,
                "tool_calls": [tc.to_openai() for tc in self.tool_calls],
            }
        return {"role": self.role, "content": self.content or ""}


# ---------------------------------------------------------------------------
# Streaming types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamRecord:
    """One decoded ``data:`` payload, normalized to delta or message shape."""

    delta: dict[str, Any] | None = None
    message: dict[str, Any] | None = None
    finish_reason: str | None = None
    response_id: str | None = None


@dataclass
class PendingToolCall:
    """A tool call still receiving fragments, keyed by slot index."""

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass(frozen=True)
class FinalizedToolCall:
    """A complete tool call.  ``parsed`` is set once arguments are repaired."""

    id: str
    name: str
    arguments: str
    parsed: dict[str, Any] | None = None


@dataclass(frozen=True)
class StreamChunk:
    """Accumulator output for one record."""

    content: str = ""
    finished_tool_calls: list[FinalizedToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class TruncationDecision:
    messages: list[dict[str, Any]]
    total_tokens: int
    truncated: bool


@dataclass(frozen=True)
class ModelInfo:
    """Metadata for a model served by the inference server."""

    id: str
    name: str
    family: str
    max_input_tokens: int
    max_output_tokens: int
    tool_calling: bool
    version: str = "1.0.0"


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types published to the response sink."""

    LLM_STREAMING = "llm.streaming"
    TOOL_CALL = "llm.tool_call"
    LLM_RESPONSE = "llm.response"
    LLM_ERROR = "llm.error"
    LLM_CANCELLED = "llm.cancelled"


@dataclass
class AgentEvent:
    """Event published via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


def dumps_compact(value: Any) -> str:
    """Compact JSON: no spaces, unicode kept."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
