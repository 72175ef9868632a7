from __future__ import annotations

"""Prompt context assembly using tiered compression strategies."""

from dataclasses import dataclass, field
import logging
from typing import Literal, Sequence

from sourcechat.rag.ranker import RelevanceRanker
from sourcechat.rag.summarizer import SourceSummarizer, extractive_summary
from sourcechat.rag.types import CompressionMode, RankedSource, Source


logger = logging.getLogger(__name__)

PASSTHROUGH_LIMIT = 5
SINGLE_PASS_FULL = 5
SINGLE_PASS_SUMMARIZED = 10
HIGH_RELEVANCE = 0.7
MODERATE_RELEVANCE = 0.4
DEFAULT_FULL_CONTENT_CAP = 5
BLOCK_SEPARATOR = "\n\n---\n\n"
SEE_SOURCE_PLACEHOLDER = "(See source for details)"
LOW_RELEVANCE_PLACEHOLDER = "(Referenced but not highly relevant to this query)"

Strategy = Literal["empty", "passthrough", "single-pass", "two-pass"]


@dataclass(frozen=True)
class CompressedContext:
    """Rendered prompt context plus the render order used for numbering."""
    text: str
    ordered_sources: list[Source]
    strategy: Strategy
    ranked: list[RankedSource] = field(default_factory=list)
    full_content_count: int = 0


def render_block(index: int, source: Source, body: str) -> str:
    return f"[Source {index}] ID: {source.id}\nTitle: {source.title}\nURL: {source.url}\n\n{body}"


def _join(rendered: list[tuple[Source, str]]) -> tuple[str, list[Source]]:
    blocks = [
        render_block(i, source, body) for i, (source, body) in enumerate(rendered, start=1)
    ]
    return BLOCK_SEPARATOR.join(blocks), [source for source, _ in rendered]


@dataclass(frozen=True)
class ContextCompressor:
    """Choose and apply a compression strategy for one turn's sources."""
    ranker: RelevanceRanker | None = None
    summarizer: SourceSummarizer | None = None
    full_content_cap: int = DEFAULT_FULL_CONTENT_CAP

    async def compress(
        self,
        sources: Sequence[Source],
        query: str,
        mode: CompressionMode = "two-pass",
    ) -> CompressedContext:
        if not sources:
            return CompressedContext(text="", ordered_sources=[], strategy="empty")
        if len(sources) <= PASSTHROUGH_LIMIT:
            return self.passthrough(sources)
        if mode == "single-pass" or self.ranker is None:
            return self.single_pass(sources)
        return await self.two_pass(sources, query)

    def passthrough(self, sources: Sequence[Source]) -> CompressedContext:
        text, ordered = _join([(source, source.content) for source in sources])
        return CompressedContext(
            text=text,
            ordered_sources=ordered,
            strategy="passthrough",
            full_content_count=len(ordered),
        )

    def single_pass(self, sources: Sequence[Source]) -> CompressedContext:
        """Fixed tiering by position, with no model calls."""
        rendered: list[tuple[Source, str]] = []
        for position, source in enumerate(sources):
            if position < SINGLE_PASS_FULL:
                body = source.content
            elif position < SINGLE_PASS_FULL + SINGLE_PASS_SUMMARIZED:
                body = f"Summary: {extractive_summary(source.content)}"
            else:
                body = SEE_SOURCE_PLACEHOLDER
            rendered.append((source, body))
        text, ordered = _join(rendered)
        return CompressedContext(
            text=text,
            ordered_sources=ordered,
            strategy="single-pass",
            full_content_count=min(len(ordered), SINGLE_PASS_FULL),
        )

    async def two_pass(self, sources: Sequence[Source], query: str) -> CompressedContext:
        """Rank, tier by score, cap full content and summarize the middle tier."""
        assert self.ranker is not None
        ranked = await self.ranker.rank(sources, query)
        high = [item for item in ranked if item.relevance_score >= HIGH_RELEVANCE]
        moderate = [
            item for item in ranked if MODERATE_RELEVANCE <= item.relevance_score < HIGH_RELEVANCE
        ]
        low = [item for item in ranked if item.relevance_score < MODERATE_RELEVANCE]

        cap = max(0, self.full_content_cap)
        if len(high) > cap:
            logger.info(
                "full_content_cap_applied",
                extra={"highly_relevant": len(high), "cap": cap},
            )
            moderate = high[cap:] + moderate
            high = high[:cap]

        summaries: dict[str, str] = {}
        moderate_sources = [item.source for item in moderate]
        if moderate_sources and self.summarizer is not None:
            summaries = await self.summarizer.summarize(moderate_sources)

        rendered: list[tuple[Source, str]] = [(item.source, item.source.content) for item in high]
        for source in moderate_sources:
            summary = summaries.get(source.id) or extractive_summary(source.content)
            rendered.append((source, f"Summary: {summary}"))
        rendered.extend((item.source, LOW_RELEVANCE_PLACEHOLDER) for item in low)

        text, ordered = _join(rendered)
        logger.info(
            "context_compressed",
            extra={
                "strategy": "two-pass",
                "full": len(high),
                "summarized": len(moderate_sources),
                "referenced": len(low),
            },
        )
        return CompressedContext(
            text=text,
            ordered_sources=ordered,
            strategy="two-pass",
            ranked=ranked,
            full_content_count=len(high),
        )
