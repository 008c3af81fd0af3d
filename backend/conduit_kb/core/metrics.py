"""Prometheus metrics instrumentation."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

SYNC_DURATION = Histogram(
    "ckb_sync_duration_seconds",
    "Duration of a source sync",
    labelnames=("source",),
    registry=REGISTRY,
)

DOCUMENTS_PROCESSED = Counter(
    "ckb_documents_total",
    "Documents handled by sync, by outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)

STORE_WRITE_FAILURES = Counter(
    "ckb_store_write_failures_total",
    "Failed store writes",
    labelnames=("store",),
    registry=REGISTRY,
)

QUERY_LATENCY = Histogram(
    "ckb_query_latency_seconds",
    "Latency of hybrid search",
    labelnames=("query_class",),
    registry=REGISTRY,
)

STORE_QUERY_TIMEOUTS = Counter(
    "ckb_store_query_timeouts_total",
    "Store sub-queries that timed out or failed",
    labelnames=("store",),
    registry=REGISTRY,
)

INDEX_SIZE = Gauge(
    "ckb_index_chunks",
    "Number of chunks stored per index",
    labelnames=("store",),
    registry=REGISTRY,
)


def metrics_payload() -> tuple[bytes, str]:
    """Return the exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


__all__ = [
    "REGISTRY",
    "SYNC_DURATION",
    "DOCUMENTS_PROCESSED",
    "STORE_WRITE_FAILURES",
    "QUERY_LATENCY",
    "STORE_QUERY_TIMEOUTS",
    "INDEX_SIZE",
    "metrics_payload",
]
