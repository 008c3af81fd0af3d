"""Persistent catalog of sources, documents, chunks and per-store index status."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Sequence

import orjson

from conduit_kb.db.sqlite import SQLiteDatabase, placeholders
from conduit_kb.ingest.types import Chunk
from conduit_kb.models.entities import STORE_NAMES, Document, Source, SourceState, StoreStatus
from conduit_kb.utils.time import from_ms, now_ms

SCHEMA = """
CREATE TABLE IF NOT EXISTS sources (
  id TEXT PRIMARY KEY,
  root TEXT NOT NULL UNIQUE,
  kind TEXT NOT NULL,
  include_json TEXT NOT NULL,
  exclude_json TEXT NOT NULL,
  readonly_json TEXT NOT NULL,
  state TEXT NOT NULL,
  last_error TEXT,
  last_synced_at INTEGER,
  document_count INTEGER NOT NULL DEFAULT 0,
  chunk_count INTEGER NOT NULL DEFAULT 0,
  created_at INTEGER NOT NULL,
  updated_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS documents (
  id TEXT PRIMARY KEY,
  source_id TEXT NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
  rel_path TEXT NOT NULL,
  path TEXT NOT NULL,
  fingerprint TEXT,
  content_type TEXT,
  mime TEXT,
  title TEXT,
  size_bytes INTEGER NOT NULL DEFAULT 0,
  metadata_json TEXT NOT NULL DEFAULT '{}',
  last_synced_at INTEGER,
  UNIQUE (source_id, rel_path)
);
CREATE INDEX IF NOT EXISTS idx_documents_source ON documents(source_id);
CREATE TABLE IF NOT EXISTS chunks (
  id TEXT PRIMARY KEY,
  document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
  ordinal INTEGER NOT NULL,
  text TEXT NOT NULL,
  start_char INTEGER NOT NULL,
  end_char INTEGER NOT NULL,
  overlap_start INTEGER NOT NULL,
  token_count INTEGER NOT NULL,
  tag TEXT NOT NULL,
  prev_id TEXT,
  next_id TEXT,
  metadata_json TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id, ordinal);
CREATE TABLE IF NOT EXISTS index_status (
  document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
  store TEXT NOT NULL,
  status TEXT NOT NULL,
  error TEXT,
  attempts INTEGER NOT NULL DEFAULT 0,
  updated_at INTEGER NOT NULL,
  PRIMARY KEY (document_id, store)
);
"""


class Catalog:
    """Bookkeeping for everything the stores have been asked to hold.

    The catalog is the single writer of document rows. A document's
    ``fingerprint`` is only written after its chunks have reached the
    stores, so an interrupted sync leaves the old fingerprint in place and
    the next sync picks the document up again.
    """

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db
        self.db.ensure_schema(SCHEMA)

    # Sources ----------------------------------------------------------

    def insert_source(self, source: Source) -> None:
        now = now_ms()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO sources (id, root, kind, include_json, exclude_json, readonly_json, state,
                                     last_error, last_synced_at, document_count, chunk_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL, 0, 0, ?, ?)
                """,
                [
                    source.id,
                    str(source.root),
                    source.kind,
                    _dumps(source.include),
                    _dumps(source.exclude),
                    _dumps([str(path) for path in source.readonly_paths]),
                    source.state.value,
                    now,
                    now,
                ],
            )

    def get_source(self, source_id: str) -> Source | None:
        row = self.db.query_one("SELECT * FROM sources WHERE id = ?", [source_id])
        return _source_from_row(row) if row else None

    def find_source_by_root(self, root: Path) -> Source | None:
        row = self.db.query_one("SELECT * FROM sources WHERE root = ?", [str(root)])
        return _source_from_row(row) if row else None

    def list_sources(self) -> list[Source]:
        rows = self.db.query("SELECT * FROM sources ORDER BY created_at, id")
        return [_source_from_row(row) for row in rows]

    def delete_source(self, source_id: str) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM sources WHERE id = ?", [source_id])

    def set_source_state(
        self,
        source_id: str,
        state: SourceState,
        error: str | None = None,
        synced: bool = False,
    ) -> None:
        now = now_ms()
        with self.db.transaction() as cursor:
            if synced:
                cursor.execute(
                    "UPDATE sources SET state = ?, last_error = ?, last_synced_at = ?, updated_at = ? WHERE id = ?",
                    [state.value, error, now, now, source_id],
                )
            else:
                cursor.execute(
                    "UPDATE sources SET state = ?, last_error = ?, updated_at = ? WHERE id = ?",
                    [state.value, error, now, source_id],
                )

    def refresh_source_stats(self, source_id: str) -> tuple[int, int]:
        row = self.db.query_one(
            """
            SELECT COUNT(DISTINCT d.id) AS documents, COUNT(c.id) AS chunks
            FROM documents d LEFT JOIN chunks c ON c.document_id = d.id
            WHERE d.source_id = ?
            """,
            [source_id],
        )
        documents = int(row["documents"]) if row else 0
        chunks = int(row["chunks"]) if row else 0
        with self.db.transaction() as cursor:
            cursor.execute(
                "UPDATE sources SET document_count = ?, chunk_count = ?, updated_at = ? WHERE id = ?",
                [documents, chunks, now_ms(), source_id],
            )
        return documents, chunks

    # Documents --------------------------------------------------------

    def documents_for_source(self, source_id: str) -> dict[str, Document]:
        rows = self.db.query("SELECT * FROM documents WHERE source_id = ? ORDER BY rel_path", [source_id])
        statuses = self._statuses([row["id"] for row in rows])
        return {row["rel_path"]: _document_from_row(row, statuses.get(row["id"], {})) for row in rows}

    def get_document(self, document_id: str) -> Document | None:
        row = self.db.query_one("SELECT * FROM documents WHERE id = ?", [document_id])
        if row is None:
            return None
        return _document_from_row(row, self._statuses([document_id]).get(document_id, {}))

    def stage_document(self, document: Document, chunks: Sequence[Chunk], stores: Iterable[str] = STORE_NAMES) -> None:
        """Record a document's new chunks and mark every store as pending.

        The stored fingerprint is left untouched; see ``commit_fingerprint``.
        """
        now = now_ms()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO documents (id, source_id, rel_path, path, fingerprint, content_type, mime, title,
                                       size_bytes, metadata_json, last_synced_at)
                VALUES (?, ?, ?, ?, NULL, ?, ?, ?, ?, ?, NULL)
                ON CONFLICT(id) DO UPDATE SET
                  path = excluded.path,
                  content_type = excluded.content_type,
                  mime = excluded.mime,
                  title = excluded.title,
                  size_bytes = excluded.size_bytes,
                  metadata_json = excluded.metadata_json
                """,
                [
                    document.id,
                    document.source_id,
                    document.rel_path,
                    str(document.path),
                    document.content_type,
                    document.mime,
                    document.title,
                    document.size_bytes,
                    _dumps(document.metadata),
                ],
            )
            cursor.execute("DELETE FROM chunks WHERE document_id = ?", [document.id])
            cursor.executemany(
                """
                INSERT INTO chunks (id, document_id, ordinal, text, start_char, end_char, overlap_start,
                                    token_count, tag, prev_id, next_id, metadata_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        chunk.id,
                        chunk.document_id,
                        chunk.ordinal,
                        chunk.text,
                        chunk.start_char,
                        chunk.end_char,
                        chunk.overlap_start,
                        chunk.token_count,
                        chunk.tag,
                        chunk.prev_id,
                        chunk.next_id,
                        _dumps(chunk.metadata),
                    )
                    for chunk in chunks
                ],
            )
            self._write_status(cursor, document.id, stores, StoreStatus.PENDING, None, now)

    def commit_fingerprint(self, document_id: str, fingerprint: str) -> None:
        now = now_ms()
        with self.db.transaction() as cursor:
            cursor.execute(
                "UPDATE documents SET fingerprint = ?, last_synced_at = ? WHERE id = ?",
                [fingerprint, now, document_id],
            )

    def record_store_result(self, document_id: str, store: str, error: str | None) -> None:
        status = StoreStatus.OK if error is None else StoreStatus.FAILED
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO index_status (document_id, store, status, error, attempts, updated_at)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT(document_id, store) DO UPDATE SET
                  status = excluded.status,
                  error = excluded.error,
                  attempts = index_status.attempts + 1,
                  updated_at = excluded.updated_at
                """,
                [document_id, store, status.value, error, now_ms()],
            )

    def mark_pending(self, document_ids: Sequence[str], stores: Iterable[str]) -> None:
        now = now_ms()
        stores = list(stores)
        with self.db.transaction() as cursor:
            for document_id in document_ids:
                self._write_status(cursor, document_id, stores, StoreStatus.PENDING, None, now)

    def delete_document(self, document_id: str) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM documents WHERE id = ?", [document_id])

    def document_ids_for_source(self, source_id: str) -> list[str]:
        rows = self.db.query("SELECT id FROM documents WHERE source_id = ? ORDER BY id", [source_id])
        return [row["id"] for row in rows]

    # Chunks -----------------------------------------------------------

    def chunks_for_document(self, document_id: str) -> list[Chunk]:
        rows = self.db.query("SELECT * FROM chunks WHERE document_id = ? ORDER BY ordinal", [document_id])
        return [_chunk_from_row(row) for row in rows]

    def hydrate(self, chunk_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        """Load chunk rows joined with their document for result assembly."""
        if not chunk_ids:
            return {}
        rows = self.db.query(
            f"""
            SELECT c.*, d.source_id, d.path, d.rel_path, d.title, d.content_type, d.metadata_json AS document_metadata
            FROM chunks c JOIN documents d ON d.id = c.document_id
            WHERE c.id IN ({placeholders(chunk_ids)})
            """,
            list(chunk_ids),
        )
        hydrated: dict[str, dict[str, Any]] = {}
        for row in rows:
            hydrated[row["id"]] = {
                "chunk": _chunk_from_row(row),
                "source_id": row["source_id"],
                "path": row["path"],
                "rel_path": row["rel_path"],
                "title": row["title"],
                "content_type": row["content_type"],
                "document_metadata": orjson.loads(row["document_metadata"] or "{}"),
            }
        return hydrated

    def close(self) -> None:
        self.db.close()

    # Internal helpers -------------------------------------------------

    def _statuses(self, document_ids: Sequence[str]) -> dict[str, dict[str, StoreStatus]]:
        statuses: dict[str, dict[str, StoreStatus]] = {}
        if not document_ids:
            return statuses
        ids = list(document_ids)
        for offset in range(0, len(ids), 500):
            batch = ids[offset : offset + 500]
            rows = self.db.query(
                f"SELECT document_id, store, status FROM index_status WHERE document_id IN ({placeholders(batch)})",
                batch,
            )
            for row in rows:
                statuses.setdefault(row["document_id"], {})[row["store"]] = StoreStatus(row["status"])
        return statuses

    @staticmethod
    def _write_status(cursor, document_id: str, stores: Iterable[str], status: StoreStatus, error: str | None, now: int) -> None:
        cursor.executemany(
            """
            INSERT INTO index_status (document_id, store, status, error, attempts, updated_at)
            VALUES (?, ?, ?, ?, 0, ?)
            ON CONFLICT(document_id, store) DO UPDATE SET
              status = excluded.status,
              error = excluded.error,
              updated_at = excluded.updated_at
            """,
            [(document_id, store, status.value, error, now) for store in stores],
        )


def _dumps(value: Any) -> str:
    return orjson.dumps(value, default=str).decode("utf-8")


def _source_from_row(row) -> Source:
    return Source(
        id=row["id"],
        root=Path(row["root"]),
        kind=row["kind"],
        include=orjson.loads(row["include_json"]),
        exclude=orjson.loads(row["exclude_json"]),
        readonly_paths=[Path(path) for path in orjson.loads(row["readonly_json"])],
        state=SourceState(row["state"]),
        last_error=row["last_error"],
        last_synced_at=from_ms(row["last_synced_at"]),
        document_count=row["document_count"],
        chunk_count=row["chunk_count"],
        created_at=from_ms(row["created_at"]),
        updated_at=from_ms(row["updated_at"]),
    )


def _document_from_row(row, statuses: dict[str, StoreStatus]) -> Document:
    return Document(
        id=row["id"],
        source_id=row["source_id"],
        rel_path=row["rel_path"],
        path=Path(row["path"]),
        fingerprint=row["fingerprint"],
        content_type=row["content_type"],
        mime=row["mime"],
        title=row["title"],
        size_bytes=row["size_bytes"],
        last_synced_at=from_ms(row["last_synced_at"]),
        metadata=orjson.loads(row["metadata_json"] or "{}"),
        store_status=dict(statuses),
    )


def _chunk_from_row(row) -> Chunk:
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        ordinal=row["ordinal"],
        text=row["text"],
        start_char=row["start_char"],
        end_char=row["end_char"],
        overlap_start=row["overlap_start"],
        token_count=row["token_count"],
        tag=row["tag"],
        prev_id=row["prev_id"],
        next_id=row["next_id"],
        metadata=orjson.loads(row["metadata_json"] or "{}"),
    )


__all__ = ["Catalog", "SCHEMA"]
