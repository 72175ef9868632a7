from __future__ import annotations

"""Model-based relevance ranking of sources against a query."""

from dataclasses import dataclass
import logging
from typing import Any, Callable, Sequence

from sourcechat.rag.llm import LLMError, ModelBackend, TokenUsage, parse_json_array
from sourcechat.rag.prompts import RANKING_SYSTEM_PROMPT, ranking_prompt
from sourcechat.rag.types import RankedSource, Source, UsageOperation


logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
PREVIEW_CHARS = 150

UsageCallback = Callable[[UsageOperation, TokenUsage], None]


@dataclass(frozen=True)
class _Ranking:
    score: float
    reason: str | None


def build_source_metadata(sources: Sequence[Source]) -> str:
    """Build lightweight previews (title, url, first characters) for ranking."""
    entries: list[str] = []
    for i, source in enumerate(sources, start=1):
        preview = source.content[:PREVIEW_CHARS].replace("\n", " ")
        ellipsis = "..." if len(source.content) > PREVIEW_CHARS else ""
        entries.append(
            f'[{i}] "{source.title}"\nURL: {source.url}\nPreview: {preview}{ellipsis}'
        )
    return "\n\n".join(entries)


def parse_rankings(content: str, source_count: int) -> dict[int, _Ranking]:
    """Parse and validate a JSON ranking array keyed by 1-based index."""
    items = parse_json_array(content)
    rankings: dict[int, _Ranking] = {}
    for item in items:
        if not isinstance(item, dict):
            raise LLMError("Invalid ranking item")
        index = item.get("index")
        score = item.get("score")
        reason = item.get("reason")
        if isinstance(index, bool) or not isinstance(index, int):
            raise LLMError("Invalid ranking index")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise LLMError("Invalid ranking score")
        if reason is not None and not isinstance(reason, str):
            raise LLMError("Invalid ranking reason")
        if index < 1 or index > source_count:
            logger.warning("ranking_index_out_of_range", extra={"index": index})
            continue
        if index in rankings:
            continue
        rankings[index] = _Ranking(score=min(1.0, max(0.0, float(score))), reason=reason)
    return rankings


def neutral_ranking(sources: Sequence[Source], score: float = NEUTRAL_SCORE) -> list[RankedSource]:
    return [RankedSource(source=source, relevance_score=score) for source in sources]


@dataclass(frozen=True)
class RelevanceRanker:
    """Score sources against a query with a single model call."""
    backend: ModelBackend
    on_usage: UsageCallback | None = None

    async def rank(self, sources: Sequence[Source], query: str) -> list[RankedSource]:
        """Return every source with a score, sorted descending (stable on ties).

        Call and parse failures both degrade to the neutral score so the
        pipeline never stalls on ranking.
        """
        if not sources:
            return []
        messages: list[dict[str, Any]] = [
            {"role": "user", "content": ranking_prompt(query, build_source_metadata(sources))}
        ]
        try:
            result = await self.backend.generate(RANKING_SYSTEM_PROMPT, messages)
        except Exception as exc:
            logger.warning(
                "ranking_failed",
                extra={"sources": len(sources), "detail": type(exc).__name__},
            )
            return neutral_ranking(sources)
        if self.on_usage is not None:
            self.on_usage("ranking", result.usage)

        try:
            rankings = parse_rankings(result.text, len(sources))
        except LLMError as exc:
            logger.warning("ranking_parse_failed", extra={"detail": str(exc)})
            return neutral_ranking(sources)

        ranked: list[RankedSource] = []
        for i, source in enumerate(sources, start=1):
            ranking = rankings.get(i)
            if ranking is None:
                logger.warning(
                    "ranking_missing_source",
                    extra={"index": i, "source_id": source.id},
                )
                ranked.append(RankedSource(source=source, relevance_score=NEUTRAL_SCORE))
                continue
            ranked.append(
                RankedSource(source=source, relevance_score=ranking.score, reason=ranking.reason)
            )
        return sorted(ranked, key=lambda item: item.relevance_score, reverse=True)
