"""Reranking of the fused head of the result list."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from rapidfuzz import fuzz

from conduit_kb.core.cancellation import CancellationToken
from conduit_kb.core.config import Settings
from conduit_kb.core.errors import CapabilityUnavailable
from conduit_kb.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class RerankCandidate:
    chunk_id: str
    text: str
    score: float


@runtime_checkable
class RerankScorer(Protocol):
    name: str

    def score(self, query: str, texts: Sequence[str]) -> list[float]: ...


class FuzzyScorer:
    """Deterministic token-set overlap scorer."""

    name = "fuzzy"

    def score(self, query: str, texts: Sequence[str]) -> list[float]:
        return [fuzz.token_set_ratio(query, text) / 100.0 for text in texts]


class CrossEncoderScorer:
    """sentence-transformers CrossEncoder loaded on first use."""

    name = "cross-encoder"

    def __init__(self, model_name: str, device: str | None = None) -> None:
        self.model_name = model_name
        self.device = device
        self._model = None
        self._lock = threading.Lock()

    def score(self, query: str, texts: Sequence[str]) -> list[float]:
        model = self._load()
        scores = model.predict([[query, text] for text in texts], convert_to_numpy=True)
        return [float(value) for value in scores]

    def _load(self):
        with self._lock:
            if self._model is None:
                try:
                    from sentence_transformers import CrossEncoder
                except ImportError as exc:
                    raise CapabilityUnavailable("sentence-transformers is not installed") from exc
                try:
                    self._model = CrossEncoder(self.model_name, device=self.device)
                except Exception as exc:  # pragma: no cover - requires model download
                    raise CapabilityUnavailable(f"Failed to load rerank model '{self.model_name}': {exc}") from exc
            return self._model


class Reranker:
    """Reorder the top of a ranked list with a scorer, within a time budget."""

    def __init__(self, scorer: RerankScorer, top_n: int = 10, budget_ms: int = 1500) -> None:
        self.scorer = scorer
        self.top_n = top_n
        self.budget_ms = budget_ms

    def rerank(
        self,
        query: str,
        candidates: Sequence[RerankCandidate],
        token: CancellationToken | None = None,
        elapsed_ms: float = 0.0,
    ) -> tuple[list[str], dict[str, float]] | None:
        """Return the reordered ids and scores, or ``None`` when skipped."""
        if not candidates:
            return None
        if token is not None and token.is_cancelled():
            return None
        if elapsed_ms >= self.budget_ms:
            logger.debug("Rerank skipped, latency budget spent", extra={"ctx_elapsed_ms": elapsed_ms})
            return None
        head = list(candidates[: self.top_n])
        started = time.perf_counter()
        try:
            scores = self.scorer.score(query, [candidate.text for candidate in head])
        except CapabilityUnavailable as exc:
            logger.warning("Rerank unavailable", extra={"ctx_scorer": self.scorer.name, "ctx_error": str(exc)})
            return None
        if elapsed_ms + (time.perf_counter() - started) * 1000 > self.budget_ms:
            logger.debug("Rerank result dropped, over latency budget")
            return None
        by_id = {candidate.chunk_id: value for candidate, value in zip(head, scores)}
        order = sorted(head, key=lambda candidate: (-by_id[candidate.chunk_id], -candidate.score, candidate.chunk_id))
        ordered = [candidate.chunk_id for candidate in order]
        ordered.extend(candidate.chunk_id for candidate in candidates[self.top_n :])
        return ordered, by_id


def build_reranker(settings: Settings) -> Reranker:
    if settings.rerank_backend == "cross-encoder":
        scorer: RerankScorer = CrossEncoderScorer(settings.rerank_model)
    else:
        scorer = FuzzyScorer()
    return Reranker(scorer, top_n=settings.rerank_top_n, budget_ms=settings.rerank_budget_ms)


def should_rerank(enabled: bool, override: bool | None) -> bool:
    if override is not None:
        return override
    return enabled


__all__ = [
    "RerankCandidate",
    "RerankScorer",
    "FuzzyScorer",
    "CrossEncoderScorer",
    "Reranker",
    "build_reranker",
    "should_rerank",
]
