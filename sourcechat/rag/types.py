from __future__ import annotations

"""Core data types for sources, chat events, citations and stream events."""

from dataclasses import dataclass, field
from typing import Any, Literal, Union


CompressionMode = Literal["two-pass", "single-pass"]
ContextMode = Literal["classic", "agentic"]
UsageOperation = Literal["chat", "ranking", "summarization"]


@dataclass(frozen=True)
class Source:
    """User-collected unit of content available to ground an answer."""
    id: str
    title: str
    url: str
    content: str
    type: str = "text"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RankedSource:
    """Source with a model-assigned relevance score in [0, 1]."""
    source: Source
    relevance_score: float
    reason: str | None = None


@dataclass(frozen=True)
class Citation:
    """Attribution of part of an answer to a specific source."""
    source_id: str
    source_title: str
    excerpt: str
    label: str = ""


@dataclass(frozen=True)
class ToolCall:
    """Tool invocation requested by the model during a turn."""
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    timestamp: float = 0.0


@dataclass(frozen=True)
class UserEvent:
    id: str
    notebook_id: str
    timestamp: float
    content: str
    type: Literal["user"] = "user"


@dataclass(frozen=True)
class AssistantEvent:
    id: str
    notebook_id: str
    timestamp: float
    content: str
    citations: tuple[Citation, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    type: Literal["assistant"] = "assistant"


@dataclass(frozen=True)
class ToolResultEvent:
    id: str
    notebook_id: str
    timestamp: float
    tool_call_id: str
    tool_name: str
    result: Any
    error: str | None = None
    duration_ms: float | None = None
    type: Literal["tool-result"] = "tool-result"


ChatEvent = Union[UserEvent, AssistantEvent, ToolResultEvent]


@dataclass(frozen=True)
class ClassifiedError:
    """Error classified into a category with user-facing guidance."""
    category: str
    user_message: str
    technical_message: str
    recoverable: bool
    suggested_action: str | None = None


@dataclass(frozen=True)
class ChatResult:
    """Final outcome of a chat turn."""
    content: str
    citations: list[Citation]
    tool_calls: list[ToolCall] = field(default_factory=list)
    error: ClassifiedError | None = None


@dataclass(frozen=True)
class TextEvent:
    content: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolCallEvent:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    type: Literal["tool-call"] = "tool-call"


@dataclass(frozen=True)
class ToolResultStreamEvent:
    tool_call_id: str
    tool_name: str
    result: Any
    error: str | None = None
    type: Literal["tool-result"] = "tool-result"


@dataclass(frozen=True)
class CompleteEvent:
    """Terminal stream message carrying the reconciled turn result."""
    result: ChatResult
    type: Literal["complete"] = "complete"


StreamEvent = Union[TextEvent, ToolCallEvent, ToolResultStreamEvent, CompleteEvent]
