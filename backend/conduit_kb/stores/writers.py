"""Concurrent fan-out of document writes to every store."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from conduit_kb.core.errors import CapabilityUnavailable, WriterFailure
from conduit_kb.core.logging import get_logger
from conduit_kb.core.metrics import INDEX_SIZE, STORE_WRITE_FAILURES
from conduit_kb.ingest.types import Chunk, IndexedDocument
from conduit_kb.stores.base import IndexStore

logger = get_logger(__name__)


@dataclass(slots=True)
class WriteOutcome:
    """Per-store result of writing or retiring one document."""

    document_id: str
    errors: dict[str, Exception] = field(default_factory=dict)
    succeeded: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, CapabilityUnavailable):
        return False
    if isinstance(exc, WriterFailure):
        return exc.retryable
    return True


class IndexWriters:
    """Apply or retire a document in several stores at once.

    Each store write runs on its own thread and is retried with jittered
    exponential backoff; a store that still fails is reported in the
    outcome without affecting the others. Capability errors (embedding or
    extraction unavailable) are not retried within a run.
    """

    def __init__(
        self,
        stores: Mapping[str, IndexStore],
        retries: int = 3,
        max_backoff: float = 1.0,
        on_capability_error: Callable[[str, CapabilityUnavailable], None] | None = None,
    ) -> None:
        self.stores = dict(stores)
        self.retries = retries
        self.max_backoff = max_backoff
        self.on_capability_error = on_capability_error
        self._pool = ThreadPoolExecutor(max_workers=max(1, len(self.stores)) * 4, thread_name_prefix="ckb-writer")

    def apply(
        self,
        document: IndexedDocument,
        chunks: Sequence[Chunk],
        stores: Iterable[str] | None = None,
    ) -> WriteOutcome:
        return self._fan_out(document.id, stores, lambda store: store.apply(document, chunks))

    def retire(self, document_id: str, stores: Iterable[str] | None = None) -> WriteOutcome:
        return self._fan_out(document_id, stores, lambda store: store.retire(document_id))

    def refresh_metrics(self) -> None:
        for name, store in self.stores.items():
            INDEX_SIZE.labels(store=name).set(store.count())

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    # Internal helpers -------------------------------------------------

    def _fan_out(self, document_id: str, names: Iterable[str] | None, action) -> WriteOutcome:
        selected = list(names) if names is not None else list(self.stores)
        futures = {name: self._pool.submit(self._run, name, document_id, action) for name in selected}
        outcome = WriteOutcome(document_id=document_id)
        for name, future in futures.items():
            error = future.result()
            if error is None:
                outcome.succeeded.append(name)
            else:
                outcome.errors[name] = error
        return outcome

    def _run(self, name: str, document_id: str, action) -> Exception | None:
        store = self.stores[name]
        retrying = Retrying(
            stop=stop_after_attempt(self.retries),
            wait=wait_random_exponential(multiplier=0.05, max=self.max_backoff),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    action(store)
        except CapabilityUnavailable as exc:
            STORE_WRITE_FAILURES.labels(store=name).inc()
            logger.warning(
                "Store capability unavailable",
                extra={"ctx_store": name, "ctx_document": document_id, "ctx_error": str(exc)},
            )
            if self.on_capability_error is not None:
                self.on_capability_error(name, exc)
            return exc
        except Exception as exc:
            STORE_WRITE_FAILURES.labels(store=name).inc()
            logger.warning(
                "Store write failed",
                extra={"ctx_store": name, "ctx_document": document_id, "ctx_error": str(exc)},
            )
            return exc
        return None


__all__ = ["IndexWriters", "WriteOutcome"]
