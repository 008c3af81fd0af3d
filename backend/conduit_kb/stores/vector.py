"""Dense vector store with an in-memory cosine index."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Iterable, Sequence

from conduit_kb.core.errors import EmbeddingUnavailable
from conduit_kb.core.logging import get_logger
from conduit_kb.db.sqlite import SQLiteDatabase
from conduit_kb.ingest.embeddings import Embedder, as_bytes, from_bytes
from conduit_kb.ingest.types import Chunk, IndexedDocument
from conduit_kb.models.dto import SearchFilters
from conduit_kb.stores.base import IndexStore, StoreHit, matches_filters

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS vectors (
  chunk_id TEXT PRIMARY KEY,
  model TEXT NOT NULL,
  dim INTEGER NOT NULL,
  vector BLOB NOT NULL
);
"""


@dataclass(slots=True)
class _Entry:
    vector: list[float]
    document_id: str
    source_id: str
    content_type: str | None
    extension: str | None


class VectorStore(IndexStore):
    """Embeds chunks on write and answers cosine top-k queries from memory.

    Vectors are persisted as float32 blobs and normalised to unit length when
    loaded, so similarity is a dot product. Rows written by a different
    embedding model are purged on start and their documents are reported in
    ``stale_documents`` for re-indexing.
    """

    name = "vector"

    def __init__(self, db: SQLiteDatabase, embedder: Embedder, min_score: float = 0.0) -> None:
        super().__init__(db, SCHEMA)
        self.embedder = embedder
        self.min_score = min_score
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.RLock()
        self.stale_documents: set[str] = set()
        self.rebuild()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def rebuild(self) -> None:
        """Reload the in-memory index from disk."""
        rows = self.db.query(
            """
            SELECT v.chunk_id, v.model, v.vector, c.document_id, c.source_id, c.content_type, c.extension
            FROM vectors v JOIN vector_chunks c ON c.chunk_id = v.chunk_id
            """
        )
        entries: dict[str, _Entry] = {}
        stale: list[tuple[str, str]] = []
        for row in rows:
            if row["model"] != self.embedder.name:
                stale.append((row["chunk_id"], row["document_id"]))
                continue
            entries[row["chunk_id"]] = _Entry(
                vector=_unit(from_bytes(row["vector"])),
                document_id=row["document_id"],
                source_id=row["source_id"],
                content_type=row["content_type"],
                extension=row["extension"],
            )
        if stale:
            logger.warning(
                "Purging vectors from a different embedding model",
                extra={"ctx_count": len(stale), "ctx_model": self.embedder.name},
            )
            self._remove([chunk_id for chunk_id, _ in stale])
            self.stale_documents.update(document_id for _, document_id in stale)
        with self._lock:
            self._entries = entries

    def search(self, query: str, filters: SearchFilters | None, top_k: int) -> list[StoreHit]:
        with self._lock:
            if not self._entries:
                return []
        return self.search_vector(self.embedder.embed(query), filters, top_k)

    def search_vector(
        self,
        vector: Sequence[float],
        filters: SearchFilters | None,
        top_k: int,
        exclude_document: str | None = None,
    ) -> list[StoreHit]:
        """Cosine top-k for an already embedded query."""
        with self._lock:
            candidates = list(self._entries.items())
        query_vector = _unit(vector)
        scored: list[tuple[str, str, float]] = []
        for chunk_id, entry in candidates:
            if entry.document_id == exclude_document:
                continue
            if not matches_filters(
                filters,
                document_id=entry.document_id,
                source_id=entry.source_id,
                content_type=entry.content_type,
                extension=entry.extension,
            ):
                continue
            if len(entry.vector) != len(query_vector):
                continue
            score = _dot(entry.vector, query_vector)
            if score >= self.min_score and score > 0.0:
                scored.append((chunk_id, entry.document_id, score))
        scored.sort(key=lambda item: (-item[2], item[0]))
        return [StoreHit(chunk_id=chunk_id, document_id=document_id, score=score) for chunk_id, document_id, score in scored[:top_k]]

    def vectors(self, chunk_ids: Iterable[str]) -> dict[str, list[float]]:
        with self._lock:
            return {chunk_id: self._entries[chunk_id].vector for chunk_id in chunk_ids if chunk_id in self._entries}

    # Internal helpers -------------------------------------------------

    def _add(self, document: IndexedDocument, chunks: Sequence[Chunk]) -> None:
        dim = self.embedder.dim
        embedded: list[tuple[Chunk, list[float]]] = []
        for chunk in chunks:
            vector = self.embedder.embed(chunk.text)
            if len(vector) != dim:
                raise EmbeddingUnavailable(f"embedder returned {len(vector)} dimensions, expected {dim}")
            embedded.append((chunk, vector))
        with self.db.transaction() as cursor:
            self._register_chunks(cursor, document, chunks)
            cursor.executemany(
                "INSERT OR REPLACE INTO vectors (chunk_id, model, dim, vector) VALUES (?, ?, ?, ?)",
                [(chunk.id, self.embedder.name, dim, as_bytes(vector)) for chunk, vector in embedded],
            )
        with self._lock:
            for chunk, vector in embedded:
                self._entries[chunk.id] = _Entry(
                    vector=_unit(vector),
                    document_id=document.id,
                    source_id=document.source_id,
                    content_type=document.content_type,
                    extension=document.extension,
                )

    def _remove(self, chunk_ids: Sequence[str]) -> None:
        with self.db.transaction() as cursor:
            cursor.executemany("DELETE FROM vectors WHERE chunk_id = ?", [(chunk_id,) for chunk_id in chunk_ids])
            self._unregister_chunks(cursor, chunk_ids)
        with self._lock:
            for chunk_id in chunk_ids:
                self._entries.pop(chunk_id, None)


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return _dot(a, b) / norm


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def _unit(vector: Sequence[float]) -> list[float]:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return list(vector)
    return [value / norm for value in vector]


__all__ = ["VectorStore", "cosine"]
