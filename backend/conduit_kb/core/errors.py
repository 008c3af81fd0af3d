"""Exception hierarchy for ingestion and retrieval."""

from __future__ import annotations


class KnowledgeBaseError(RuntimeError):
    """Base exception for knowledge-base failures."""


class ConfigurationError(KnowledgeBaseError):
    """Raised when configuration values are inconsistent."""


class AuthorizationDenied(KnowledgeBaseError):
    """Raised when the policy hook refuses a path."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class SourceNotFound(KnowledgeBaseError):
    """Raised when a source id is not registered."""


class DocumentNotFound(KnowledgeBaseError):
    """Raised when a document id is not in the catalog."""


class SourceExists(KnowledgeBaseError):
    """Raised when registering a root path that is already a source."""

    def __init__(self, message: str, *, source_id: str) -> None:
        super().__init__(message)
        self.source_id = source_id


class SourceUnreachable(KnowledgeBaseError):
    """Raised when a source root is missing or unreadable."""

    def __init__(self, message: str, *, source_id: str | None = None) -> None:
        super().__init__(message)
        self.source_id = source_id


class SyncInProgress(KnowledgeBaseError):
    """Raised when a sync is requested for a source that is already syncing."""

    def __init__(self, message: str, *, source_id: str) -> None:
        super().__init__(message)
        self.source_id = source_id


class UnsupportedContent(KnowledgeBaseError):
    """Raised when a payload is binary or has no extractor."""


class WriterFailure(KnowledgeBaseError):
    """Raised when a store fails to apply or retire a document."""

    def __init__(
        self,
        message: str,
        *,
        store: str,
        document_id: str | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.store = store
        self.document_id = document_id
        self.retryable = retryable


class CapabilityUnavailable(KnowledgeBaseError):
    """Raised when a pluggable model cannot serve requests."""


class EmbeddingUnavailable(CapabilityUnavailable):
    """Raised by embedders when no vector can be produced."""


class ExtractionUnavailable(CapabilityUnavailable):
    """Raised by entity extractors when extraction cannot run."""


class QueryStoreTimeout(KnowledgeBaseError):
    """Raised when a store sub-query misses its deadline."""

    def __init__(self, message: str, *, store: str, timeout_ms: int) -> None:
        super().__init__(message)
        self.store = store
        self.timeout_ms = timeout_ms


__all__ = [
    "KnowledgeBaseError",
    "ConfigurationError",
    "AuthorizationDenied",
    "SourceNotFound",
    "DocumentNotFound",
    "SourceExists",
    "SourceUnreachable",
    "SyncInProgress",
    "UnsupportedContent",
    "WriterFailure",
    "CapabilityUnavailable",
    "EmbeddingUnavailable",
    "ExtractionUnavailable",
    "QueryStoreTimeout",
]
