from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from sourcechat.rag.types import (
    AssistantEvent,
    ChatEvent,
    ChatResult,
    Citation,
    ClassifiedError,
    Source,
    ToolCall,
    ToolResultEvent,
    UserEvent,
)


class SourceIn(BaseModel):
    id: str = Field(min_length=1)
    title: str = ""
    url: str = ""
    content: str = ""
    type: str = "text"
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_source(self) -> Source:
        return Source(
            id=self.id,
            title=self.title,
            url=self.url,
            content=self.content,
            type=self.type,
            metadata=dict(self.metadata),
        )


class CitationOut(BaseModel):
    source_id: str
    source_title: str
    excerpt: str
    label: str = ""

    @classmethod
    def from_citation(cls, citation: Citation) -> "CitationOut":
        return cls(
            source_id=citation.source_id,
            source_title=citation.source_title,
            excerpt=citation.excerpt,
            label=citation.label,
        )


class ToolCallOut(BaseModel):
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = 0.0

    @classmethod
    def from_tool_call(cls, call: ToolCall) -> "ToolCallOut":
        return cls(
            tool_call_id=call.tool_call_id,
            tool_name=call.tool_name,
            args=call.args,
            timestamp=call.timestamp,
        )


class HistoryEvent(BaseModel):
    """Prior conversation event; fields not used by its type are ignored."""
    type: Literal["user", "assistant", "tool-result"]
    id: str = ""
    timestamp: float = 0.0
    content: str = ""
    tool_calls: list[ToolCallOut] = Field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    result: Any = None
    error: str | None = None

    def to_event(self, notebook_id: str) -> ChatEvent:
        if self.type == "user":
            return UserEvent(
                id=self.id, notebook_id=notebook_id, timestamp=self.timestamp, content=self.content
            )
        if self.type == "assistant":
            return AssistantEvent(
                id=self.id,
                notebook_id=notebook_id,
                timestamp=self.timestamp,
                content=self.content,
                tool_calls=tuple(
                    ToolCall(
                        tool_call_id=call.tool_call_id,
                        tool_name=call.tool_name,
                        args=call.args,
                        timestamp=call.timestamp,
                    )
                    for call in self.tool_calls
                ),
            )
        return ToolResultEvent(
            id=self.id,
            notebook_id=notebook_id,
            timestamp=self.timestamp,
            tool_call_id=self.tool_call_id or "",
            tool_name=self.tool_name or "",
            result=self.result,
            error=self.error,
        )


class ChatRequest(BaseModel):
    question: str = Field(min_length=1)
    sources: list[SourceIn] = Field(default_factory=list)
    history: list[HistoryEvent] = Field(default_factory=list)
    context_mode: Literal["classic", "agentic"] | None = None
    notebook_id: str | None = None

    def to_sources(self) -> list[Source]:
        return [source.to_source() for source in self.sources]

    def to_history(self) -> list[ChatEvent]:
        return [event.to_event(self.notebook_id or "") for event in self.history]


class ErrorOut(BaseModel):
    category: str
    message: str
    suggested_action: str | None = None
    recoverable: bool = False

    @classmethod
    def from_classified(cls, error: ClassifiedError) -> "ErrorOut":
        return cls(
            category=error.category,
            message=error.user_message,
            suggested_action=error.suggested_action,
            recoverable=error.recoverable,
        )


class ChatResponse(BaseModel):
    content: str
    citations: list[CitationOut]
    tool_calls: list[ToolCallOut] = Field(default_factory=list)
    error: ErrorOut | None = None
    request_id: str | None = None

    @classmethod
    def from_result(cls, result: ChatResult, request_id: str | None = None) -> "ChatResponse":
        return cls(
            content=result.content,
            citations=[CitationOut.from_citation(item) for item in result.citations],
            tool_calls=[ToolCallOut.from_tool_call(call) for call in result.tool_calls],
            error=ErrorOut.from_classified(result.error) if result.error else None,
            request_id=request_id,
        )


class ModelsResponse(BaseModel):
    provider: str
    models: list[str]
    cached: bool = False
