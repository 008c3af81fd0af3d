"""Fold ranked chunk hits into one passage per document."""

from __future__ import annotations

import re
from typing import Sequence

from conduit_kb.models.dto import MergedResult, RankedResult

_BOILERPLATE_PATTERNS = [
    re.compile(r"(?im)^[ \t]*page[ \t]+\d+([ \t]+of[ \t]+\d+)?[ \t]*$"),
    re.compile(r"(?im)^[ \t]*table of contents[ \t]*$"),
    re.compile(r"(?i)this content downloaded from[\s\S]*?terms and conditions"),
    re.compile(r"(?i)all use subject to.*?terms"),
    re.compile(r"(?i)all rights reserved\.?"),
    re.compile(r"(?i)copyright\s*©?\s*\d{4}"),
    re.compile(r"(?m)^[ \t]*\[?\d+\]?[ \t]*$"),
    re.compile(r"(?m)^[-_=]{10,}[ \t]*$"),
]
_SPACE_RUN_RE = re.compile(r"[ \t]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

# Code and structured files keep every line.
_PROSE_TYPES = frozenset({"markdown", "text", "pdf", "office"})


def merge_adjacent(results: Sequence[RankedResult], strip_boilerplate: bool = True) -> list[MergedResult]:
    """Group ``results`` by document and stitch their chunks in reading order.

    Chunks whose spans overlap or touch are joined without repeating the
    shared text; gaps between chunks become a blank line. A document scores
    the mean of its chunk scores, and documents are returned best first.
    """
    groups: dict[str, list[RankedResult]] = {}
    for result in results:
        groups.setdefault(result.document_id, []).append(result)

    merged: list[MergedResult] = []
    for document_id, hits in groups.items():
        ordered = sorted(hits, key=lambda hit: (hit.start_char, hit.ordinal))
        spans, content = _stitch(ordered)
        first = hits[0]
        if strip_boilerplate and first.metadata.get("content_type") in _PROSE_TYPES:
            content = filter_boilerplate(content)
        merged.append(
            MergedResult(
                document_id=document_id,
                source_id=first.source_id,
                path=first.path,
                title=first.metadata.get("title"),
                content=content,
                score=sum(hit.score for hit in hits) / len(hits),
                chunk_ids=[hit.chunk_id for hit in ordered],
                spans=spans,
                metadata={
                    "content_type": first.metadata.get("content_type"),
                    "rel_path": first.metadata.get("rel_path"),
                },
            )
        )
    return sorted(merged, key=lambda item: -item.score)


def filter_boilerplate(text: str) -> str:
    for pattern in _BOILERPLATE_PATTERNS:
        text = pattern.sub(" ", text)
    text = _SPACE_RUN_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    return _BLANK_RUN_RE.sub("\n\n", text).strip()


def _stitch(hits: Sequence[RankedResult]) -> tuple[list[tuple[int, int]], str]:
    spans: list[tuple[int, int]] = []
    parts: list[str] = []
    for hit in hits:
        if spans and hit.start_char <= spans[-1][1]:
            start, end = spans[-1]
            if hit.end_char > end:
                parts[-1] += hit.text[end - hit.start_char :]
                spans[-1] = (start, hit.end_char)
            continue
        spans.append((hit.start_char, hit.end_char))
        parts.append(hit.text)
    return spans, "\n\n".join(part.strip() for part in parts)


__all__ = ["merge_adjacent", "filter_boilerplate"]
