"""Shared plumbing for the lexical, vector and graph stores."""

from __future__ import annotations

import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Sequence

from conduit_kb.db.sqlite import SQLiteDatabase, placeholders
from conduit_kb.ingest.types import Chunk, IndexedDocument
from conduit_kb.models.dto import SearchFilters


@dataclass(slots=True)
class StoreHit:
    chunk_id: str
    document_id: str
    score: float


class KeyedLocks:
    """One lock per key, created on demand and dropped when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Any, threading.Lock] = {}
        self._users: dict[Any, int] = defaultdict(int)

    @contextmanager
    def hold(self, keys: Iterable[Any]) -> Iterator[None]:
        ordered = sorted(set(keys))
        acquired: list[Any] = []
        try:
            for key in ordered:
                self._acquire(key)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    def _acquire(self, key: Any) -> None:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        lock.acquire()

    def _release(self, key: Any) -> None:
        with self._guard:
            lock = self._locks[key]
            lock.release()
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class IndexStore:
    """Base class for a store projecting chunks into one index.

    Subclasses implement ``_add`` and ``_remove``; ``apply`` diffs the chunk
    ids already held for a document against the new set so that replaying a
    write is a no-op.
    """

    name: str = "store"
    _chunk_schema = """
    CREATE TABLE IF NOT EXISTS {name}_chunks (
      chunk_id TEXT PRIMARY KEY,
      document_id TEXT NOT NULL,
      source_id TEXT NOT NULL,
      content_type TEXT,
      extension TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_{name}_chunks_document ON {name}_chunks(document_id);
    CREATE INDEX IF NOT EXISTS idx_{name}_chunks_source ON {name}_chunks(source_id);
    """

    def __init__(self, db: SQLiteDatabase, schema: str) -> None:
        self.db = db
        self.db.ensure_schema(self._chunk_schema.format(name=self.name) + schema)
        self._locks = KeyedLocks()

    def apply(self, document: IndexedDocument, chunks: Sequence[Chunk]) -> tuple[int, int]:
        """Bring the store in line with ``chunks``; return (added, removed)."""
        keys = [(document.id, chunk.id) for chunk in chunks]
        existing = self.chunk_ids(document.id)
        keys.extend((document.id, chunk_id) for chunk_id in existing)
        with self._locks.hold(keys):
            existing = self.chunk_ids(document.id)
            wanted = {chunk.id for chunk in chunks}
            stale = sorted(existing - wanted)
            fresh = [chunk for chunk in chunks if chunk.id not in existing]
            if stale:
                self._remove(stale)
            if fresh:
                self._add(document, fresh)
        return len(fresh), len(stale)

    def retire(self, document_id: str) -> int:
        existing = self.chunk_ids(document_id)
        if not existing:
            return 0
        with self._locks.hold((document_id, chunk_id) for chunk_id in existing):
            self._remove(sorted(existing))
        return len(existing)

    def chunk_ids(self, document_id: str) -> set[str]:
        rows = self.db.query(f"SELECT chunk_id FROM {self.name}_chunks WHERE document_id = ?", [document_id])
        return {row["chunk_id"] for row in rows}

    def count(self) -> int:
        row = self.db.query_one(f"SELECT COUNT(*) AS n FROM {self.name}_chunks")
        return int(row["n"]) if row else 0

    def search(self, query: str, filters: SearchFilters | None, top_k: int) -> list[StoreHit]:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> None:
        self.db.close()

    # Internal helpers -------------------------------------------------

    def _add(self, document: IndexedDocument, chunks: Sequence[Chunk]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def _remove(self, chunk_ids: Sequence[str]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def _register_chunks(self, cursor, document: IndexedDocument, chunks: Sequence[Chunk]) -> None:
        cursor.executemany(
            f"""
            INSERT OR REPLACE INTO {self.name}_chunks (chunk_id, document_id, source_id, content_type, extension)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (chunk.id, document.id, document.source_id, document.content_type, document.extension)
                for chunk in chunks
            ],
        )

    def _unregister_chunks(self, cursor, chunk_ids: Sequence[str]) -> None:
        cursor.executemany(
            f"DELETE FROM {self.name}_chunks WHERE chunk_id = ?",
            [(chunk_id,) for chunk_id in chunk_ids],
        )


def filter_clause(filters: SearchFilters | None, alias: str) -> tuple[str, list[Any]]:
    """SQL predicate restricting ``alias`` (a ``*_chunks`` table) to ``filters``."""
    if filters is None or filters.is_empty():
        return "", []
    clauses: list[str] = []
    params: list[Any] = []
    if filters.source_ids:
        clauses.append(f"{alias}.source_id IN ({placeholders(filters.source_ids)})")
        params.extend(filters.source_ids)
    if filters.document_ids:
        clauses.append(f"{alias}.document_id IN ({placeholders(filters.document_ids)})")
        params.extend(filters.document_ids)
    if filters.content_types:
        clauses.append(f"{alias}.content_type IN ({placeholders(filters.content_types)})")
        params.extend(filters.content_types)
    extensions = sorted(filters.normalized_extensions())
    if extensions:
        clauses.append(f"{alias}.extension IN ({placeholders(extensions)})")
        params.extend(extensions)
    return " AND " + " AND ".join(clauses), params


def matches_filters(
    filters: SearchFilters | None,
    *,
    document_id: str,
    source_id: str,
    content_type: str | None,
    extension: str | None,
) -> bool:
    if filters is None or filters.is_empty():
        return True
    if filters.source_ids and source_id not in filters.source_ids:
        return False
    if filters.document_ids and document_id not in filters.document_ids:
        return False
    if filters.content_types and content_type not in filters.content_types:
        return False
    extensions = filters.normalized_extensions()
    if extensions and (extension or "") not in extensions:
        return False
    return True


__all__ = ["StoreHit", "KeyedLocks", "IndexStore", "filter_clause", "matches_filters"]
