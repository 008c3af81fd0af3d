"""Query classification, fusion and search."""

from .classifier import QueryAnalysis, classify_query
from .hybrid import FusedItem, mmr, weighted_rrf
from .rerank import Reranker, build_reranker
from .search import HybridSearcher

__all__ = [
    "QueryAnalysis",
    "classify_query",
    "FusedItem",
    "mmr",
    "weighted_rrf",
    "Reranker",
    "build_reranker",
    "HybridSearcher",
]
