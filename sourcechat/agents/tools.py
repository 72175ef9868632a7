from __future__ import annotations

"""Tools the model can call in agentic mode to explore a turn's sources."""

from dataclasses import dataclass, field
import hashlib
import json
import logging
import threading
import time
from typing import Any, Callable, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sourcechat.rag.ranker import RelevanceRanker
from sourcechat.rag.types import Source


logger = logging.getLogger(__name__)

DEFAULT_TOOL_CACHE_TTL = 3600.0


class ToolError(RuntimeError):
    """Raised when a tool call is unknown, invalid or fails."""
    pass


class ListSourcesInput(BaseModel):
    model_config = ConfigDict(extra="ignore")


class FindRelevantSourcesInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query: str = Field(min_length=1, description="The query to find relevant sources for")
    max_sources: int = Field(
        default=10, ge=1, le=50, description="Maximum number of sources to return"
    )
    min_score: float = Field(
        default=0.4, ge=0.0, le=1.0, description="Minimum relevance score (0.0-1.0) to include"
    )


class ReadSourceInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source_id: str = Field(min_length=1, description="The ID of the source to read")


@dataclass(frozen=True)
class _ToolDefinition:
    name: str
    description: str
    input_model: type[BaseModel]
    cacheable: bool = False


_TOOLS: tuple[_ToolDefinition, ...] = (
    _ToolDefinition(
        name="list_sources",
        description=(
            "Get metadata for all sources available in this conversation, "
            "including index, id, title, url, type, and word count"
        ),
        input_model=ListSourcesInput,
    ),
    _ToolDefinition(
        name="find_relevant_sources",
        description=(
            "Find sources relevant to a specific query using relevance ranking. "
            "Returns sources with relevance_score from 0.0 to 1.0 (higher = more relevant) "
            "and relevance_reason. Use this to narrow down which sources to read in detail."
        ),
        input_model=FindRelevantSourcesInput,
        cacheable=True,
    ),
    _ToolDefinition(
        name="read_source",
        description="Get the full content of a specific source by its ID",
        input_model=ReadSourceInput,
    ),
)


def _tool_schema(model: type[BaseModel]) -> dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    schema.setdefault("properties", {})
    return schema


@dataclass
class ToolResultCache:
    """TTL cache for tool outputs keyed by tool name and canonical input."""
    ttl_seconds: float = DEFAULT_TOOL_CACHE_TTL
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, tuple[float, Any]] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @staticmethod
    def key(tool_name: str, scope: str, args: dict[str, Any]) -> str:
        canonical = json.dumps(args, sort_keys=True, default=str)
        digest = hashlib.sha256(f"{scope}|{canonical}".encode("utf-8")).hexdigest()
        return f"{tool_name}:{digest[:16]}"

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self.clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        """Store a value and prune anything that has already expired."""
        now = self.clock()
        with self._lock:
            self._prune(now)
            self._entries[key] = (now + self.ttl_seconds, value)

    def cleanup_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self.clock()
        with self._lock:
            return self._prune(now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _prune(self, now: float) -> int:
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)


@dataclass
class SourceToolProvider:
    """Tool set over one turn's sources, numbered in their original order."""
    sources: Sequence[Source]
    ranker: RelevanceRanker | None = None
    cache: ToolResultCache | None = None

    def tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": _tool_schema(tool.input_model),
                },
            }
            for tool in _TOOLS
        ]

    async def call(self, name: str, args: dict[str, Any]) -> Any:
        tool = next((item for item in _TOOLS if item.name == name), None)
        if tool is None:
            raise ToolError(f"Unknown tool: {name}")
        try:
            params = tool.input_model.model_validate(args or {})
        except ValidationError as exc:
            raise ToolError(f"Invalid arguments for {name}: {exc.errors()[0]['msg']}") from exc

        cache_key = None
        if tool.cacheable and self.cache is not None:
            cache_key = ToolResultCache.key(name, self._scope(), params.model_dump())
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info("tool_cache_hit", extra={"tool": name})
                return cached

        if isinstance(params, FindRelevantSourcesInput):
            result = await self.find_relevant_sources(params)
        elif isinstance(params, ReadSourceInput):
            result = self.read_source(params)
        else:
            result = self.list_sources()

        if cache_key is not None and self.cache is not None:
            self.cache.set(cache_key, result)
        return result

    def list_sources(self) -> dict[str, Any]:
        return {
            "sources": [
                {
                    "index": i,
                    "id": source.id,
                    "title": source.title,
                    "url": source.url,
                    "type": source.type,
                    "word_count": _word_count(source),
                }
                for i, source in enumerate(self.sources, start=1)
            ],
            "total_count": len(self.sources),
        }

    async def find_relevant_sources(self, params: FindRelevantSourcesInput) -> dict[str, Any]:
        if self.ranker is None:
            raise ToolError("Relevance ranking is not available")
        positions = {source.id: i for i, source in enumerate(self.sources, start=1)}
        ranked = await self.ranker.rank(self.sources, params.query)
        matches = [item for item in ranked if item.relevance_score >= params.min_score]
        matches = matches[: params.max_sources]
        return {
            "query": params.query,
            "total_matches": len(matches),
            "sources": [
                {
                    "index": positions.get(item.source.id),
                    "id": item.source.id,
                    "title": item.source.title,
                    "url": item.source.url,
                    "type": item.source.type,
                    "relevance_score": item.relevance_score,
                    "relevance_reason": item.reason,
                }
                for item in matches
            ],
        }

    def read_source(self, params: ReadSourceInput) -> dict[str, Any]:
        for i, source in enumerate(self.sources, start=1):
            if source.id == params.source_id:
                return {
                    "index": i,
                    "id": source.id,
                    "title": source.title,
                    "url": source.url,
                    "type": source.type,
                    "content": source.content,
                    "metadata": dict(source.metadata),
                }
        raise ToolError(f"Source {params.source_id} not found")

    def _scope(self) -> str:
        return ",".join(source.id for source in self.sources)


def _word_count(source: Source) -> int:
    value = source.metadata.get("word_count", source.metadata.get("wordCount"))
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return len(source.content.split())
