"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

CONTENT_TYPES = ("code", "markdown", "config", "data", "text", "pdf", "office")


@dataclass(slots=True)
class CleanedContent:
    """Plain text extracted from a document plus what was learned about it."""

    text: str
    content_type: str
    mime: str
    title: str | None = None
    encoding: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Chunk:
    """A contiguous slice of a document's cleaned text.

    ``text`` is always ``source[start_char:end_char]``. ``overlap_start`` is
    the offset where the part not shared with the previous chunk begins, so
    joining ``source[overlap_start:end_char]`` over all chunks rebuilds the
    source exactly.
    """

    id: str
    document_id: str
    ordinal: int
    text: str
    start_char: int
    end_char: int
    overlap_start: int
    token_count: int
    tag: str
    prev_id: str | None = None
    next_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def overlap_chars(self) -> int:
        return self.overlap_start - self.start_char


@dataclass(slots=True)
class IndexedDocument:
    """What the stores need to know about a document to filter on it."""

    id: str
    source_id: str
    content_type: str
    extension: str
    path: str


@dataclass(slots=True)
class ExtractedRelation:
    type: str
    target: str
    confidence: float = 1.0


@dataclass(slots=True)
class ExtractedEntity:
    type: str
    name: str
    relations: list[ExtractedRelation] = field(default_factory=list)
    confidence: float = 1.0


__all__ = [
    "CONTENT_TYPES",
    "CleanedContent",
    "Chunk",
    "IndexedDocument",
    "ExtractedRelation",
    "ExtractedEntity",
]
