"""Rank fusion and diversification."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence

from rapidfuzz import fuzz

from conduit_kb.stores.base import StoreHit


@dataclass(slots=True)
class FusedItem:
    chunk_id: str
    document_id: str
    score: float
    ranks: dict[str, int] = field(default_factory=dict)
    raw_scores: dict[str, float] = field(default_factory=dict)
    contributions: dict[str, float] = field(default_factory=dict)


def weighted_rrf(
    results: Mapping[str, Sequence[StoreHit]],
    weights: Mapping[str, float],
    k: int = 60,
) -> list[FusedItem]:
    """Combine per-store rankings with weighted reciprocal rank fusion.

    Each store contributes ``weight / (k + rank)`` for every chunk it
    returned, ranks starting at 1. Ties are broken by chunk id so the order
    never depends on store response timing.
    """
    fused: dict[str, FusedItem] = {}
    for store, hits in results.items():
        weight = weights.get(store, 0.0)
        if weight <= 0:
            continue
        for rank, hit in enumerate(hits, start=1):
            item = fused.get(hit.chunk_id)
            if item is None:
                item = fused[hit.chunk_id] = FusedItem(chunk_id=hit.chunk_id, document_id=hit.document_id, score=0.0)
            contribution = weight / (k + rank)
            item.score += contribution
            item.ranks[store] = rank
            item.raw_scores[store] = hit.score
            item.contributions[store] = contribution
    return sorted(fused.values(), key=lambda item: (-item.score, item.chunk_id))


def mmr(
    candidates: Sequence[tuple[str, float]],
    top_k: int,
    lambda_param: float = 0.7,
    similarity: Callable[[str, str], float] | None = None,
) -> list[str]:
    """Apply maximal marginal relevance to diversify ranked candidates.

    ``candidates`` are ``(chunk_id, relevance)`` pairs; relevance is
    normalised by its maximum before it is traded off against the highest
    similarity to anything already selected.
    """
    if not candidates or top_k <= 0:
        return []
    if similarity is None:
        raise ValueError("mmr needs a similarity function over chunk ids")
    peak = max(relevance for _, relevance in candidates) or 1.0
    remaining = [(chunk_id, relevance / peak) for chunk_id, relevance in candidates]
    selected: list[str] = []
    while remaining and len(selected) < top_k:
        best_index = 0
        best_score = float("-inf")
        for idx, (chunk_id, relevance) in enumerate(remaining):
            diversity = max((similarity(chunk_id, chosen) for chosen in selected), default=0.0)
            score = lambda_param * relevance - (1 - lambda_param) * diversity
            if score > best_score:
                best_score = score
                best_index = idx
        selected.append(remaining.pop(best_index)[0])
    return selected


def text_similarity(a: str, b: str) -> float:
    return fuzz.token_set_ratio(a, b) / 100.0


__all__ = ["FusedItem", "weighted_rrf", "mmr", "text_similarity"]
