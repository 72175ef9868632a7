from __future__ import annotations

"""Batched model summaries for moderately relevant sources."""

from dataclasses import dataclass
import logging
import re
from typing import Any, Sequence

from sourcechat.rag.llm import LLMError, ModelBackend, parse_json_array
from sourcechat.rag.prompts import SUMMARY_SYSTEM_PROMPT, summary_prompt
from sourcechat.rag.ranker import UsageCallback
from sourcechat.rag.types import Source


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
BODY_CHARS = 500
EMPTY_SUMMARY = "(no content available)"

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]*")
_TERMINAL_RE = re.compile(r"[.!?]$")


def extractive_summary(content: str, max_sentences: int = 3, max_chars: int = BODY_CHARS) -> str:
    """Return the first sentences of ``content`` ending in terminal punctuation."""
    text = content or ""
    sentences = _SENTENCE_RE.findall(text)
    summary = " ".join(sentence.strip() for sentence in sentences[:max_sentences]).strip()
    if not summary:
        summary = text[:max_chars].strip()
    if not summary:
        return EMPTY_SUMMARY
    if _TERMINAL_RE.search(summary):
        return summary
    return summary + "."


def build_summary_batch(sources: Sequence[Source]) -> str:
    return "\n\n---\n\n".join(
        f'[Source {i}] "{source.title}"\n{source.content[:BODY_CHARS]}...'
        for i, source in enumerate(sources, start=1)
    )


@dataclass(frozen=True)
class SourceSummarizer:
    """Summarize a batch of sources with one model call and extractive fallback."""
    backend: ModelBackend
    batch_size: int = DEFAULT_BATCH_SIZE
    on_usage: UsageCallback | None = None

    async def summarize(self, sources: Sequence[Source]) -> dict[str, str]:
        """Return summaries keyed by source id for the first ``batch_size`` sources."""
        batch = list(sources[: self.batch_size])
        if not batch:
            return {}
        messages: list[dict[str, Any]] = [
            {"role": "user", "content": summary_prompt(build_summary_batch(batch))}
        ]
        try:
            result = await self.backend.generate(SUMMARY_SYSTEM_PROMPT, messages)
        except Exception as exc:
            logger.warning(
                "summary_failed",
                extra={"sources": len(batch), "detail": type(exc).__name__},
            )
            return {source.id: extractive_summary(source.content) for source in batch}
        if self.on_usage is not None:
            self.on_usage("summarization", result.usage)

        summaries = _parse_summaries(result.text, batch)
        for source in batch:
            if source.id not in summaries:
                summaries[source.id] = extractive_summary(source.content)
        return summaries


def _parse_summaries(content: str, batch: list[Source]) -> dict[str, str]:
    """Parse ``{index, summary}`` items, keeping every valid item seen."""
    summaries: dict[str, str] = {}
    try:
        items = parse_json_array(content)
    except LLMError as exc:
        logger.warning("summary_parse_failed", extra={"detail": str(exc)})
        return summaries
    invalid = 0
    for item in items:
        if not isinstance(item, dict):
            invalid += 1
            continue
        index = item.get("index")
        summary = item.get("summary")
        if isinstance(index, bool) or not isinstance(index, int) or not isinstance(summary, str):
            invalid += 1
            continue
        if 1 <= index <= len(batch) and summary.strip():
            summaries.setdefault(batch[index - 1].id, summary.strip())
    if invalid:
        logger.warning("summary_parse_failed", extra={"invalid_items": invalid})
    return summaries
