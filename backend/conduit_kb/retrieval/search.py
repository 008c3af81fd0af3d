"""Search orchestration."""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Mapping

from conduit_kb.core.cancellation import CancellationToken
from conduit_kb.core.capabilities import CapabilityTracker
from conduit_kb.core.config import Settings
from conduit_kb.core.errors import CapabilityUnavailable, DocumentNotFound, QueryStoreTimeout
from conduit_kb.core.logging import get_logger
from conduit_kb.core.metrics import QUERY_LATENCY, STORE_QUERY_TIMEOUTS
from conduit_kb.db.catalog import Catalog
from conduit_kb.models.dto import QueryInfo, RankedResult, SearchFilters, SearchMode, SearchResponse, SignalScore
from conduit_kb.models.entities import STORE_NAMES
from conduit_kb.retrieval.classifier import QueryAnalysis, classify_query
from conduit_kb.retrieval.hybrid import FusedItem, mmr, text_similarity, weighted_rrf
from conduit_kb.retrieval.merge import merge_adjacent
from conduit_kb.retrieval.rerank import RerankCandidate, Reranker, should_rerank
from conduit_kb.stores.base import IndexStore, StoreHit
from conduit_kb.stores.vector import VectorStore, cosine
from conduit_kb.utils.text import index_terms, snippet

logger = get_logger(__name__)


class HybridSearcher:
    """Coordinates lexical, vector and graph retrieval for one query.

    The query is classified, the class picks per-store weights, the stores
    are queried concurrently under a shared deadline, and their rankings are
    fused with weighted RRF. The fused head is diversified with MMR and
    optionally reranked before results are hydrated from the catalog. Store
    failures only ever remove that store's contribution.
    """

    def __init__(
        self,
        settings: Settings,
        stores: Mapping[str, IndexStore],
        catalog: Catalog,
        tracker: CapabilityTracker | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self.settings = settings
        self.stores = dict(stores)
        self.catalog = catalog
        self.tracker = tracker or CapabilityTracker(settings.capability_retry_seconds)
        self.reranker = reranker
        self._pool = ThreadPoolExecutor(max_workers=max(1, len(self.stores)) * 4, thread_name_prefix="ckb-query")

    def weights_for(self, query_class: str, mode: SearchMode = "hybrid") -> dict[str, float]:
        if mode == "semantic":
            return {name: 1.0 if name == "vector" else 0.0 for name in STORE_NAMES}
        if mode == "lexical":
            return {name: 1.0 if name == "lexical" else 0.0 for name in STORE_NAMES}
        row = self.settings.strategy_weights[query_class]
        return dict(zip(STORE_NAMES, row))

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
        started = time.perf_counter()
        limit = limit or self.settings.result_limit
        analysis = classify_query(text)
        weights = self.weights_for(analysis.query_class, mode)
        response = SearchResponse(
            query=text,
            mode=mode,
            analysis=_query_info(analysis),
            weights=weights,
            merged=[] if merge else None,
        )
        if not text.strip() or (token is not None and token.is_cancelled()):
            return self._finish(response, analysis, started)

        degraded: list[str] = []
        for name, weight in weights.items():
            if weight > 0 and (name not in self.stores or not self.tracker.is_available(name)):
                weights[name] = 0.0
                degraded.append(name)
        hits = self._fan_out(text, filters, weights, degraded)
        response.degraded = sorted(degraded)
        response.weights = weights

        fused = weighted_rrf(hits, weights, k=self.settings.rrf_k)
        if not fused:
            return self._finish(response, analysis, started)

        head = fused[: max(limit, self.settings.mmr_top_n)]
        hydrated = self.catalog.hydrate([item.chunk_id for item in head])
        head = [item for item in head if item.chunk_id in hydrated]
        order = [item.chunk_id for item in head]
        cancelled = token is not None and token.is_cancelled()

        if self.settings.mmr_enabled and len(head) > 1 and not cancelled:
            similarity = self._similarity(hydrated)
            order = mmr(
                [(item.chunk_id, item.score) for item in head],
                top_k=len(head),
                lambda_param=self.settings.mmr_lambda,
                similarity=similarity,
            )
            response.mmr_applied = True

        rerank_scores: dict[str, float] = {}
        if self.reranker is not None and should_rerank(self.settings.rerank_enabled, rerank) and not cancelled:
            by_id = {item.chunk_id: item for item in head}
            outcome = self.reranker.rerank(
                text,
                [RerankCandidate(chunk_id, hydrated[chunk_id]["chunk"].text, by_id[chunk_id].score) for chunk_id in order],
                token=token,
                elapsed_ms=(time.perf_counter() - started) * 1000,
            )
            if outcome is not None:
                order, rerank_scores = outcome
                response.reranked = True

        items = {item.chunk_id: item for item in head}
        terms = _highlight_terms(text, analysis)
        response.results = [
            self._build_result(items[chunk_id], hydrated[chunk_id], weights, terms, rerank_scores.get(chunk_id))
            for chunk_id in order[:limit]
        ]
        if merge:
            response.merged = merge_adjacent(response.results)
        return self._finish(response, analysis, started)

    def similar(
        self,
        document_id: str,
        filters: SearchFilters | None = None,
        limit: int | None = None,
    ) -> SearchResponse:
        """Other documents closest to the opening chunk of ``document_id``.

        Each document appears once, represented by its best matching chunk.
        Without a usable vector store the response is empty and marked
        degraded.
        """
        started = time.perf_counter()
        limit = limit or self.settings.result_limit
        if self.catalog.get_document(document_id) is None:
            raise DocumentNotFound(f"Unknown document {document_id}")
        analysis = QueryAnalysis(text=f"similar to: {document_id}", query_class="similar")
        weights = {name: 1.0 if name == "vector" else 0.0 for name in STORE_NAMES}
        response = SearchResponse(query=analysis.text, mode="semantic", analysis=_query_info(analysis), weights=weights)
        store = self.stores.get("vector")
        chunks = self.catalog.chunks_for_document(document_id)
        if not isinstance(store, VectorStore) or not self.tracker.is_available("vector"):
            response.degraded = ["vector"]
            return self._finish(response, analysis, started)
        if not chunks:
            return self._finish(response, analysis, started)

        opening = chunks[0]
        try:
            vector = store.vectors([opening.id]).get(opening.id) or store.embedder.embed(opening.text)
            hits = store.search_vector(vector, filters, self.settings.store_top_k, exclude_document=document_id)
        except CapabilityUnavailable as exc:
            self.tracker.mark_unavailable("vector", str(exc))
            response.degraded = ["vector"]
            return self._finish(response, analysis, started)

        best: list[StoreHit] = []
        seen: set[str] = set()
        for hit in hits:
            if hit.document_id not in seen:
                seen.add(hit.document_id)
                best.append(hit)
        fused = weighted_rrf({"vector": best[:limit]}, weights, k=self.settings.rrf_k)
        hydrated = self.catalog.hydrate([item.chunk_id for item in fused])
        terms = index_terms(opening.text)[:10]
        response.results = [
            self._build_result(item, hydrated[item.chunk_id], weights, terms, None)
            for item in fused
            if item.chunk_id in hydrated
        ]
        return self._finish(response, analysis, started)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # Internal helpers -------------------------------------------------

    def _fan_out(
        self,
        text: str,
        filters: SearchFilters | None,
        weights: dict[str, float],
        degraded: list[str],
    ) -> dict[str, list[StoreHit]]:
        top_k = self.settings.store_top_k
        futures: dict[str, Future] = {
            name: self._pool.submit(self.stores[name].search, text, filters, top_k)
            for name, weight in weights.items()
            if weight > 0
        }
        timeout_ms = self.settings.store_timeout_ms
        deadline = time.monotonic() + timeout_ms / 1000
        results: dict[str, list[StoreHit]] = {}
        for name, future in futures.items():
            try:
                results[name] = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeout:
                future.cancel()
                error = QueryStoreTimeout(f"{name} store did not answer within {timeout_ms} ms", store=name, timeout_ms=timeout_ms)
                STORE_QUERY_TIMEOUTS.labels(store=name).inc()
                logger.warning(str(error), extra={"ctx_store": name})
                results[name] = []
                degraded.append(name)
            except CapabilityUnavailable as exc:
                self.tracker.mark_unavailable(name, str(exc))
                results[name] = []
                degraded.append(name)
            except Exception as exc:
                STORE_QUERY_TIMEOUTS.labels(store=name).inc()
                logger.warning("Store query failed", extra={"ctx_store": name, "ctx_error": str(exc)})
                results[name] = []
                degraded.append(name)
            else:
                self.tracker.mark_available(name)
        return results

    def _similarity(self, hydrated: Mapping[str, dict[str, Any]]):
        store = self.stores.get("vector")
        vectors = store.vectors(hydrated) if isinstance(store, VectorStore) else {}
        floor = self.settings.same_document_similarity
        cache: dict[tuple[str, str], float] = {}

        def similarity(a: str, b: str) -> float:
            key = (a, b) if a < b else (b, a)
            if key not in cache:
                va, vb = vectors.get(a), vectors.get(b)
                if va is not None and vb is not None:
                    value = cosine(va, vb)
                else:
                    value = text_similarity(hydrated[a]["chunk"].text, hydrated[b]["chunk"].text)
                if hydrated[a]["chunk"].document_id == hydrated[b]["chunk"].document_id:
                    value = max(value, floor)
                cache[key] = value
            return cache[key]

        return similarity

    def _build_result(
        self,
        item: FusedItem,
        row: dict[str, Any],
        weights: Mapping[str, float],
        terms: list[str],
        rerank_score: float | None,
    ) -> RankedResult:
        chunk = row["chunk"]
        signals = [
            SignalScore(
                store=name,
                rank=rank,
                raw_score=item.raw_scores[name],
                weight=weights.get(name, 0.0),
                contribution=item.contributions[name],
            )
            for name, rank in sorted(item.ranks.items())
        ]
        metadata = dict(chunk.metadata)
        metadata.setdefault("title", row["title"])
        metadata.setdefault("content_type", row["content_type"])
        metadata.setdefault("rel_path", row["rel_path"])
        return RankedResult(
            chunk_id=chunk.id,
            document_id=chunk.document_id,
            source_id=row["source_id"],
            path=row["path"],
            ordinal=chunk.ordinal,
            start_char=chunk.start_char,
            end_char=chunk.end_char,
            tag=chunk.tag,
            score=item.score,
            signals=signals,
            rerank_score=rerank_score,
            snippet=snippet(chunk.text, terms),
            text=chunk.text,
            metadata=metadata,
        )

    def _finish(self, response: SearchResponse, analysis: QueryAnalysis, started: float) -> SearchResponse:
        elapsed = time.perf_counter() - started
        response.elapsed_ms = elapsed * 1000
        QUERY_LATENCY.labels(query_class=analysis.query_class).observe(elapsed)
        logger.debug(
            "Search finished",
            extra={
                "ctx_query_class": analysis.query_class,
                "ctx_results": len(response.results),
                "ctx_degraded": response.degraded,
                "ctx_elapsed_ms": round(response.elapsed_ms, 2),
            },
        )
        return response


def _query_info(analysis: QueryAnalysis) -> QueryInfo:
    return QueryInfo(
        query_class=analysis.query_class,
        phrases=analysis.phrases,
        identifiers=analysis.identifiers,
        entities=analysis.entities,
    )


def _highlight_terms(text: str, analysis: QueryAnalysis) -> list[str]:
    terms = [phrase.lower() for phrase in analysis.phrases]
    terms.extend(term for term in index_terms(text) if term not in terms)
    return terms


__all__ = ["HybridSearcher"]
