"""Incremental synchronisation of registered sources into the stores."""

from __future__ import annotations

import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable

from conduit_kb.core.cancellation import CancellationToken
from conduit_kb.core.config import Settings
from conduit_kb.core.errors import SourceUnreachable, SyncInProgress, UnsupportedContent
from conduit_kb.core.events import SYNC_COMPLETED, SYNC_FAILED, SYNC_PROGRESS, SYNC_STARTED, EventBus
from conduit_kb.core.logging import get_logger
from conduit_kb.core.metrics import DOCUMENTS_PROCESSED, SYNC_DURATION
from conduit_kb.db.catalog import Catalog
from conduit_kb.ingest.chunker import Chunker, ChunkerConfig
from conduit_kb.ingest.cleaner import ContentCleaner
from conduit_kb.ingest.sources import SourceFile, SourceManager
from conduit_kb.ingest.types import Chunk, IndexedDocument
from conduit_kb.models.dto import DocumentError, StoreErrorDetail, SyncReport
from conduit_kb.models.entities import STORE_NAMES, Document, Source, SourceState
from conduit_kb.stores.writers import IndexWriters, WriteOutcome
from conduit_kb.utils.hashing import fingerprint
from conduit_kb.utils.ids import stable_id

logger = get_logger(__name__)


@dataclass(slots=True)
class _Outcome:
    kind: str
    error: DocumentError | None = None
    store_errors: list[StoreErrorDetail] = field(default_factory=list)


class SyncCoordinator:
    """Bring the stores in line with what is on disk for one or all sources.

    Every document is classified against the catalog by fingerprint:
    unchanged and fully indexed documents cost nothing, unchanged documents
    with failed or pending stores are replayed from their stored chunks into
    just those stores, new or changed documents are cleaned, chunked and
    written everywhere, and documents that disappeared are retired. The
    fingerprint is committed only once every store has answered, which
    keeps an interrupted sync resumable.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: Catalog,
        sources: SourceManager,
        writers: IndexWriters,
        events: EventBus,
        cleaner: ContentCleaner | None = None,
        chunker: Chunker | None = None,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.sources = sources
        self.writers = writers
        self.events = events
        self.cleaner = cleaner or ContentCleaner()
        self.chunker = chunker or Chunker(
            ChunkerConfig(
                target_tokens=settings.chunk_target_tokens,
                overlap_fraction=settings.chunk_overlap_fraction,
                max_tokens=settings.effective_max_tokens,
            )
        )

    def sync(self, source_id: str | None = None, token: CancellationToken | None = None) -> SyncReport:
        if source_id is not None:
            return self.sync_source(source_id, token)
        return self.sync_all(token)

    def sync_all(self, token: CancellationToken | None = None) -> SyncReport:
        """Sync every source concurrently; unreachable roots are reported, not raised."""
        token = token or CancellationToken()
        sources = self.sources.list_sources()
        report = SyncReport()
        if not sources:
            return report
        started = time.perf_counter()
        with ThreadPoolExecutor(max_workers=len(sources), thread_name_prefix="ckb-source") as pool:
            futures = [(source, pool.submit(self.sync_source, source.id, token)) for source in sources]
            for source, future in futures:
                try:
                    report.merge(future.result())
                except SourceUnreachable as exc:
                    report.source_ids.append(source.id)
                    report.unreachable[source.id] = str(exc)
                except SyncInProgress:
                    logger.warning("Skipping source already being synced", extra={"ctx_source": source.id})
                except Exception as exc:
                    logger.warning("Source sync failed", extra={"ctx_source": source.id, "ctx_error": str(exc)})
                    report.source_ids.append(source.id)
                    report.errors.append(DocumentError(path=str(source.root), kind="source", message=str(exc)))
        report.duration_ms = (time.perf_counter() - started) * 1000
        return report

    def sync_source(self, source_id: str, token: CancellationToken | None = None) -> SyncReport:
        source = self.sources.get(source_id)
        with self.sources.sync_lock(source.id):
            return self._run(source, token or CancellationToken())

    # Internal helpers -------------------------------------------------

    def _run(self, source: Source, token: CancellationToken) -> SyncReport:
        started = time.perf_counter()
        report = SyncReport(source_ids=[source.id])
        self.catalog.set_source_state(source.id, SourceState.SYNCING, error=source.last_error)
        self.events.publish(SYNC_STARTED, source_id=source.id, root=str(source.root))
        logger.info("Sync started", extra={"ctx_source": source.id, "ctx_root": str(source.root)})
        try:
            files = self.sources.enumerate(source)
            known = self.catalog.documents_for_source(source.id)
            tasks = self._plan(source, files, known)
            self._execute(source, tasks, token, report)
            self.catalog.refresh_source_stats(source.id)
        except SourceUnreachable as exc:
            self._fail(source, exc)
            raise
        except Exception as exc:
            logger.exception("Sync failed", extra={"ctx_source": source.id})
            self._fail(source, exc)
            raise

        report.duration_ms = (time.perf_counter() - started) * 1000
        if report.cancelled:
            self.catalog.set_source_state(source.id, SourceState.SYNCED, error="sync cancelled")
        else:
            self.catalog.set_source_state(source.id, SourceState.SYNCED, synced=True)
        SYNC_DURATION.labels(source=source.id).observe(report.duration_ms / 1000)
        self.writers.refresh_metrics()
        logger.info(
            "Sync completed",
            extra={
                "ctx_source": source.id,
                "ctx_added": report.added,
                "ctx_updated": report.updated,
                "ctx_removed": report.removed,
                "ctx_errored": report.errored,
                "ctx_cancelled": report.cancelled,
            },
        )
        self.events.publish(SYNC_COMPLETED, source_id=source.id, report=report.model_dump())
        return report

    def _fail(self, source: Source, exc: Exception) -> None:
        self.catalog.set_source_state(source.id, SourceState.ERROR, error=str(exc))
        self.events.publish(SYNC_FAILED, source_id=source.id, error=str(exc))

    def _plan(self, source: Source, files: list[SourceFile], known: dict[str, Document]) -> list[Callable[[], _Outcome]]:
        tasks: list[Callable[[], _Outcome]] = []
        seen: set[str] = set()
        for item in files:
            seen.add(item.rel_path)
            previous = known.get(item.rel_path)
            tasks.append(lambda item=item, previous=previous: self._sync_file(source, item, previous))
        for rel_path, document in known.items():
            if rel_path not in seen:
                tasks.append(lambda document=document: self._retire(document))
        return tasks

    def _execute(
        self,
        source: Source,
        tasks: list[Callable[[], _Outcome]],
        token: CancellationToken,
        report: SyncReport,
    ) -> None:
        total = len(tasks)
        queue = deque(tasks)
        in_flight: set[Future] = set()
        processed = 0
        workers = max(1, self.settings.sync_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ckb-sync") as pool:
            while queue or in_flight:
                while queue and len(in_flight) < workers:
                    if token.is_cancelled():
                        report.cancelled = True
                        queue.clear()
                        break
                    in_flight.add(pool.submit(queue.popleft()))
                if not in_flight:
                    break
                done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    processed += 1
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        logger.exception("Document task failed", extra={"ctx_source": source.id})
                        outcome = _Outcome("errored", DocumentError(path=str(source.root), kind="internal", message=str(exc)))
                    _tally(report, outcome)
                    self.events.publish(SYNC_PROGRESS, source_id=source.id, processed=processed, total=total)
        if report.cancelled:
            logger.info("Sync cancelled", extra={"ctx_source": source.id, "ctx_processed": processed, "ctx_total": total})

    def _sync_file(self, source: Source, item: SourceFile, previous: Document | None) -> _Outcome:
        document_id = stable_id("doc", source.id, item.rel_path)
        try:
            stat = item.path.stat()
            if stat.st_size > self.settings.max_file_bytes:
                logger.warning(
                    "Skipping oversized file",
                    extra={"ctx_path": str(item.path), "ctx_bytes": stat.st_size},
                )
                return self._skip(previous)
            raw = item.path.read_bytes()
        except OSError as exc:
            logger.warning("Cannot read file", extra={"ctx_path": str(item.path), "ctx_error": str(exc)})
            return _Outcome("errored", DocumentError(path=str(item.path), document_id=document_id, kind="io", message=str(exc)))

        digest = fingerprint(raw, stat.st_mtime_ns)
        if previous is not None and previous.fingerprint == digest:
            if previous.fully_indexed():
                return _Outcome("unchanged")
            return self._replay(previous)

        try:
            cleaned = self.cleaner.clean(raw, item.path.name)
        except UnsupportedContent as exc:
            logger.warning("Skipping unsupported content", extra={"ctx_path": str(item.path), "ctx_error": str(exc)})
            return self._skip(previous)

        chunks = self.chunker.chunk(
            document_id,
            cleaned.text,
            cleaned.content_type,
            language=cleaned.metadata.get("language"),
        )
        document = Document(
            id=document_id,
            source_id=source.id,
            rel_path=item.rel_path,
            path=item.path,
            fingerprint=previous.fingerprint if previous else None,
            content_type=cleaned.content_type,
            mime=cleaned.mime,
            title=cleaned.title,
            size_bytes=stat.st_size,
            last_synced_at=None,
            metadata=cleaned.metadata,
        )
        self.catalog.stage_document(document, chunks)
        outcome = self.writers.apply(_indexed(document), chunks)
        store_errors = self._record(document, outcome)
        self.catalog.commit_fingerprint(document.id, digest)
        return _Outcome("added" if previous is None else "updated", store_errors=store_errors)

    def _replay(self, document: Document) -> _Outcome:
        stores = document.stores_needing_retry()
        chunks: list[Chunk] = self.catalog.chunks_for_document(document.id)
        logger.info(
            "Retrying stores for unchanged document",
            extra={"ctx_document": document.id, "ctx_stores": stores},
        )
        outcome = self.writers.apply(_indexed(document), chunks, stores=stores)
        return _Outcome("retried", store_errors=self._record(document, outcome))

    def _skip(self, previous: Document | None) -> _Outcome:
        """A file that can no longer be indexed takes its old chunks with it."""
        if previous is None:
            return _Outcome("skipped")
        logger.info("Retiring document that can no longer be indexed", extra={"ctx_document": previous.id})
        return self._retire(previous)

    def _retire(self, document: Document) -> _Outcome:
        self.catalog.mark_pending([document.id], STORE_NAMES)
        outcome = self.writers.retire(document.id)
        store_errors = self._record(document, outcome)
        if not outcome.ok:
            return _Outcome(
                "errored",
                DocumentError(
                    path=str(document.path),
                    document_id=document.id,
                    kind="retire",
                    message="; ".join(f"{name}: {error}" for name, error in sorted(outcome.errors.items())),
                ),
                store_errors,
            )
        self.catalog.delete_document(document.id)
        return _Outcome("removed")

    def _record(self, document: Document, outcome: WriteOutcome) -> list[StoreErrorDetail]:
        details: list[StoreErrorDetail] = []
        for name in outcome.succeeded:
            self.catalog.record_store_result(document.id, name, None)
        for name, error in sorted(outcome.errors.items()):
            self.catalog.record_store_result(document.id, name, str(error))
            details.append(
                StoreErrorDetail(store=name, document_id=document.id, path=str(document.path), message=str(error))
            )
        return details


def _indexed(document: Document) -> IndexedDocument:
    return IndexedDocument(
        id=document.id,
        source_id=document.source_id,
        content_type=document.content_type or "text",
        extension=document.extension,
        path=str(document.path),
    )


def _tally(report: SyncReport, outcome: _Outcome) -> None:
    setattr(report, outcome.kind, getattr(report, outcome.kind) + 1)
    if outcome.error is not None:
        report.errors.append(outcome.error)
    report.store_errors.extend(outcome.store_errors)
    DOCUMENTS_PROCESSED.labels(outcome=outcome.kind).inc()


__all__ = ["SyncCoordinator"]
