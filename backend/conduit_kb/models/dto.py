"""Pydantic models returned to callers of the knowledge base."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

SearchMode = Literal["hybrid", "semantic", "lexical"]


class SearchFilters(BaseModel):
    source_ids: list[str] | None = None
    document_ids: list[str] | None = None
    content_types: list[str] | None = Field(default=None, description="code, markdown, config, data, text, pdf, office")
    extensions: list[str] | None = Field(default=None, description="File extensions without the leading dot")

    def is_empty(self) -> bool:
        return not (self.source_ids or self.document_ids or self.content_types or self.extensions)

    def normalized_extensions(self) -> set[str]:
        return {ext.lower().lstrip(".") for ext in self.extensions or []}


class SignalScore(BaseModel):
    store: str
    rank: int
    raw_score: float
    weight: float
    contribution: float


class RankedResult(BaseModel):
    chunk_id: str
    document_id: str
    source_id: str
    path: str
    ordinal: int
    start_char: int
    end_char: int
    tag: str
    score: float
    signals: list[SignalScore] = Field(default_factory=list)
    rerank_score: float | None = None
    snippet: str
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    def signal(self, store: str) -> SignalScore | None:
        for item in self.signals:
            if item.store == store:
                return item
        return None


class MergedResult(BaseModel):
    """Hits of one document folded into a single passage."""

    document_id: str
    source_id: str
    path: str
    title: str | None = None
    content: str
    score: float
    chunk_ids: list[str] = Field(default_factory=list)
    spans: list[tuple[int, int]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def chunk_count(self) -> int:
        return len(self.chunk_ids)


class QueryInfo(BaseModel):
    query_class: str
    phrases: list[str] = Field(default_factory=list)
    identifiers: list[str] = Field(default_factory=list)
    entities: list[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    query: str
    mode: SearchMode
    analysis: QueryInfo
    weights: dict[str, float]
    degraded: list[str] = Field(default_factory=list)
    mmr_applied: bool = False
    reranked: bool = False
    elapsed_ms: float = 0.0
    results: list[RankedResult] = Field(default_factory=list)
    merged: list[MergedResult] | None = None


class DocumentError(BaseModel):
    path: str
    document_id: str | None = None
    kind: str
    message: str


class StoreErrorDetail(BaseModel):
    store: str
    document_id: str
    path: str
    message: str


class SyncReport(BaseModel):
    source_ids: list[str] = Field(default_factory=list)
    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    retried: int = 0
    skipped: int = 0
    errored: int = 0
    cancelled: bool = False
    duration_ms: float = 0.0
    errors: list[DocumentError] = Field(default_factory=list)
    store_errors: list[StoreErrorDetail] = Field(default_factory=list)
    unreachable: dict[str, str] = Field(default_factory=dict)

    @property
    def total_changed(self) -> int:
        return self.added + self.updated + self.removed

    def merge(self, other: "SyncReport") -> None:
        self.source_ids.extend(other.source_ids)
        self.added += other.added
        self.updated += other.updated
        self.removed += other.removed
        self.unchanged += other.unchanged
        self.retried += other.retried
        self.skipped += other.skipped
        self.errored += other.errored
        self.cancelled = self.cancelled or other.cancelled
        self.errors.extend(other.errors)
        self.store_errors.extend(other.store_errors)
        self.unreachable.update(other.unreachable)


__all__ = [
    "SearchMode",
    "SearchFilters",
    "SignalScore",
    "RankedResult",
    "MergedResult",
    "QueryInfo",
    "SearchResponse",
    "DocumentError",
    "StoreErrorDetail",
    "SyncReport",
]
