"""Knowledge base facade wiring catalog, stores, sync and search together."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Sequence

from conduit_kb.core.cancellation import CancellationToken
from conduit_kb.core.capabilities import CapabilityTracker
from conduit_kb.core.config import Settings, get_settings
from conduit_kb.core.errors import CapabilityUnavailable, WriterFailure
from conduit_kb.core.events import EventBus
from conduit_kb.core.logging import get_logger
from conduit_kb.db.catalog import Catalog
from conduit_kb.db.sqlite import SQLiteDatabase
from conduit_kb.ingest.embeddings import Embedder, build_embedder
from conduit_kb.ingest.entities import EntityExtractor, HeuristicEntityExtractor
from conduit_kb.ingest.sources import SourceManager
from conduit_kb.ingest.sync import SyncCoordinator
from conduit_kb.models.dto import SearchFilters, SearchMode, SearchResponse, SyncReport
from conduit_kb.models.entities import Document, Source
from conduit_kb.retrieval.rerank import Reranker, build_reranker
from conduit_kb.retrieval.search import HybridSearcher
from conduit_kb.security.policy import Authorizer
from conduit_kb.stores import GraphStore, IndexWriters, LexicalStore, VectorStore

logger = get_logger(__name__)


class KnowledgeBase:
    """Entry point for registering sources, syncing them and searching.

    Each store lives in its own SQLite file under ``settings.data_dir``
    next to the catalog. Model-backed capabilities (embedding, entity
    extraction, reranking) can be injected; by default the deterministic
    hashed embedder and heuristic extractor are used.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        embedder: Embedder | None = None,
        extractor: EntityExtractor | None = None,
        authorizer: Authorizer | None = None,
        reranker: Reranker | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        data_dir = Path(self.settings.data_dir)
        self.events = events or EventBus()
        self.tracker = CapabilityTracker(self.settings.capability_retry_seconds)
        self.catalog = Catalog(SQLiteDatabase(data_dir / "catalog.db"))
        self.lexical = LexicalStore(SQLiteDatabase(data_dir / "lexical.db"), fuzzy_cutoff=self.settings.fuzzy_cutoff)
        self.vector = VectorStore(
            SQLiteDatabase(data_dir / "vector.db"),
            embedder or build_embedder(self.settings),
            min_score=self.settings.vector_min_score,
        )
        self.graph = GraphStore(
            SQLiteDatabase(data_dir / "graph.db"),
            extractor or HeuristicEntityExtractor(),
            fuzzy_cutoff=self.settings.fuzzy_cutoff,
        )
        stores = {store.name: store for store in (self.lexical, self.vector, self.graph)}
        self.writers = IndexWriters(
            stores,
            retries=self.settings.writer_retries,
            on_capability_error=self._capability_failed,
        )
        self.sources = SourceManager(self.catalog, self.settings, self.events, authorizer)
        self.coordinator = SyncCoordinator(self.settings, self.catalog, self.sources, self.writers, self.events)
        self.searcher = HybridSearcher(
            self.settings,
            stores,
            self.catalog,
            tracker=self.tracker,
            reranker=reranker or build_reranker(self.settings),
        )
        self._requeue_stale_vectors()

    # Sources ----------------------------------------------------------

    def register_source(
        self,
        path: Path | str,
        include: Sequence[str] | None = None,
        exclude: Sequence[str] | None = None,
    ) -> str:
        return self.sources.register(path, include=include, exclude=exclude).id

    def unregister_source(self, source_id: str) -> None:
        """Retire every document of a source from all stores, then forget it.

        Refused with ``SyncInProgress`` while the source is syncing. When a
        store cannot retire a document the catalog is left intact so the
        call can be repeated.
        """
        source = self.sources.get(source_id)
        with self.sources.sync_lock(source.id):
            failures: dict[str, str] = {}
            for document_id in self.catalog.document_ids_for_source(source.id):
                outcome = self.writers.retire(document_id)
                for store, error in outcome.errors.items():
                    failures[store] = str(error)
            if failures:
                store = sorted(failures)[0]
                raise WriterFailure(
                    f"Could not retire documents of {source.id} from {', '.join(sorted(failures))}",
                    store=store,
                )
            self.sources.forget(source.id)
        self.writers.refresh_metrics()

    def list_sources(self) -> list[Source]:
        return self.sources.list_sources()

    def get_source(self, source_id: str) -> Source:
        return self.sources.get(source_id)

    def list_documents(self, source_id: str) -> list[Document]:
        source = self.sources.get(source_id)
        return list(self.catalog.documents_for_source(source.id).values())

    # Sync and search --------------------------------------------------

    def sync(self, source_id: str | None = None, token: CancellationToken | None = None) -> SyncReport:
        return self.coordinator.sync(source_id, token)

    def search(
        self,
        text: str,
        filters: SearchFilters | None = None,
        mode: SearchMode = "hybrid",
        limit: int | None = None,
        rerank: bool | None = None,
        token: CancellationToken | None = None,
        merge: bool = False,
    ) -> SearchResponse:
        return self.searcher.search(
            text, filters=filters, mode=mode, limit=limit, rerank=rerank, token=token, merge=merge
        )

    def similar(
        self,
        document_id: str,
        filters: SearchFilters | None = None,
        limit: int | None = None,
    ) -> SearchResponse:
        return self.searcher.similar(document_id, filters=filters, limit=limit)

    def status(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.settings.data_dir),
            "sources": len(self.sources.list_sources()),
            "index_sizes": {
                "lexical": self.lexical.count(),
                "vector": self.vector.count(),
                "graph": self.graph.count(),
            },
            "entities": self.graph.entity_count(),
            "capabilities": self.tracker.summary(),
            "degraded": self.tracker.degraded(),
        }

    def close(self) -> None:
        self.searcher.close()
        self.writers.close()
        for store in (self.lexical, self.vector, self.graph):
            store.close()
        self.catalog.close()

    def __enter__(self) -> "KnowledgeBase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Internal helpers -------------------------------------------------

    def _capability_failed(self, store: str, error: CapabilityUnavailable) -> None:
        self.tracker.mark_unavailable(store, str(error))

    def _requeue_stale_vectors(self) -> None:
        stale = [doc_id for doc_id in sorted(self.vector.stale_documents) if self.catalog.get_document(doc_id)]
        if stale:
            logger.info("Queued documents for re-embedding", extra={"ctx_count": len(stale)})
            self.catalog.mark_pending(stale, ["vector"])
        self.vector.stale_documents.clear()


@lru_cache(maxsize=1)
def get_knowledge_base() -> KnowledgeBase:
    return KnowledgeBase(get_settings())


__all__ = ["KnowledgeBase", "get_knowledge_base"]
