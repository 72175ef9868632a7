from __future__ import annotations

"""Citation parsing, inline relabeling and stream masking for model answers."""

import re
from dataclasses import dataclass, field
from typing import Sequence

from sourcechat.rag.types import Citation, Source


CITATIONS_OPEN = "---CITATIONS---"
CITATIONS_CLOSE = "---END CITATIONS---"

_BLOCK_RE = re.compile(
    r"\n?" + re.escape(CITATIONS_OPEN) + r"\n?(.*?)\n?" + re.escape(CITATIONS_CLOSE) + r"\n?",
    flags=re.DOTALL,
)
_UNTERMINATED_RE = re.compile(r"\n?" + re.escape(CITATIONS_OPEN) + r"(.*)$", flags=re.DOTALL)
_CITATION_LINE_RE = re.compile(r"\[Source (\d+)\]:\s*\"?([^\"]+)\"?")
_INLINE_RE = re.compile(r"\[Source (\d+)\]")


@dataclass(frozen=True)
class ReconciledAnswer:
    """Answer text with the citation block removed and inline markers relabeled."""
    clean_content: str
    citations: list[Citation]


def sub_label(index: int) -> str:
    """Return the sub-label for a zero-based occurrence index.

    a..z, then aa, ab, ... (bijective base-26).
    """
    label = ""
    n = index + 1
    while n > 0:
        n, remainder = divmod(n - 1, 26)
        label = chr(97 + remainder) + label
    return label


def extract_citation_block(content: str) -> tuple[str, dict[int, list[str]]]:
    """Strip the trailing citation block and group its excerpts by source number."""
    match = _BLOCK_RE.search(content)
    if match is None:
        match = _UNTERMINATED_RE.search(content)
    if match is None:
        return content, {}
    clean = (content[: match.start()] + content[match.end():]).strip()
    excerpts: dict[int, list[str]] = {}
    for line in match.group(1).split("\n"):
        if not line.strip():
            continue
        line_match = _CITATION_LINE_RE.search(line)
        if not line_match:
            continue
        source_num = int(line_match.group(1))
        excerpts.setdefault(source_num, []).append(line_match.group(2).strip())
    return clean, excerpts


def count_inline_markers(content: str) -> dict[int, int]:
    """Count inline ``[Source N]`` markers in first-seen order."""
    counts: dict[int, int] = {}
    for match in _INLINE_RE.finditer(content):
        source_num = int(match.group(1))
        counts[source_num] = counts.get(source_num, 0) + 1
    return counts


def relabel_inline_markers(content: str, counts: dict[int, int]) -> str:
    """Suffix repeated ``[Source N]`` markers with a, b, c... in appearance order."""
    seen: dict[int, int] = {}

    def _replace(match: re.Match[str]) -> str:
        source_num = int(match.group(1))
        occurrence = seen.get(source_num, 0)
        seen[source_num] = occurrence + 1
        if counts.get(source_num, 1) > 1:
            return f"[Source {source_num}{sub_label(occurrence)}]"
        return match.group(0)

    return _INLINE_RE.sub(_replace, content)


def reconcile_citations(content: str, sources: Sequence[Source]) -> ReconciledAnswer:
    """Turn a raw model answer into clean text plus per-occurrence citations.

    Inline marker counts are authoritative; the trailing block only supplies
    excerpts. ``sources`` must be in the order they were numbered in the prompt.
    """
    clean, excerpts_by_num = extract_citation_block(content)
    counts = count_inline_markers(clean)
    if counts:
        clean = relabel_inline_markers(clean, counts)

    citations: list[Citation] = []
    for source_num, count in counts.items():
        index = source_num - 1
        if index < 0 or index >= len(sources):
            continue
        source = sources[index]
        excerpts = excerpts_by_num.get(source_num, [])
        if count > 1:
            for i in range(count):
                label = sub_label(i)
                excerpt = excerpts[i] if i < len(excerpts) else f"Reference {label} from this source"
                citations.append(
                    Citation(
                        source_id=source.id,
                        source_title=source.title,
                        excerpt=excerpt,
                        label=f"[Source {source_num}{label}]",
                    )
                )
        else:
            excerpt = excerpts[0] if excerpts else "Referenced in response"
            citations.append(
                Citation(
                    source_id=source.id,
                    source_title=source.title,
                    excerpt=excerpt,
                    label=f"[Source {source_num}]",
                )
            )
    return ReconciledAnswer(clean_content=clean, citations=citations)


@dataclass
class CitationStreamMasker:
    """Track accumulated streamed text and release only the part safe to show.

    Text from the citation block opener onward is never released. A trailing
    partial match of the opener is held back until more text disambiguates it.
    """
    marker: str = CITATIONS_OPEN
    text: str = ""
    emitted: int = 0
    _closed: bool = field(default=False, repr=False)

    def feed(self, chunk: str) -> str:
        """Append a chunk and return the newly visible delta."""
        self.text += chunk
        if self._closed:
            return ""
        marker_at = self.text.find(self.marker)
        if marker_at != -1:
            self._closed = True
            visible_end = marker_at
        else:
            visible_end = len(self.text) - self._partial_suffix_length()
        return self._release(visible_end)

    def flush(self) -> str:
        """Release any held-back tail once the stream has ended."""
        if self._closed:
            return ""
        return self._release(len(self.text))

    def _release(self, visible_end: int) -> str:
        if visible_end <= self.emitted:
            return ""
        delta = self.text[self.emitted:visible_end]
        self.emitted = visible_end
        return delta

    def _partial_suffix_length(self) -> int:
        longest = min(len(self.marker) - 1, len(self.text))
        for size in range(longest, 0, -1):
            if self.marker.startswith(self.text[-size:]):
                return size
        return 0
