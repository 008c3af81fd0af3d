"""Internal dataclasses representing persisted entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

STORE_NAMES = ("lexical", "vector", "graph")


class SourceState(str, Enum):
    NEVER_SYNCED = "never_synced"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


class StoreStatus(str, Enum):
    PENDING = "pending"
    OK = "ok"
    FAILED = "failed"


@dataclass(slots=True)
class Source:
    id: str
    root: Path
    kind: str
    include: list[str]
    exclude: list[str]
    readonly_paths: list[Path]
    state: SourceState
    last_error: str | None
    last_synced_at: datetime | None
    document_count: int
    chunk_count: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "root": str(self.root),
            "kind": self.kind,
            "include": self.include,
            "exclude": self.exclude,
            "readonly_paths": [str(path) for path in self.readonly_paths],
            "state": self.state.value,
            "last_error": self.last_error,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "document_count": self.document_count,
            "chunk_count": self.chunk_count,
        }


@dataclass(slots=True)
class Document:
    id: str
    source_id: str
    rel_path: str
    path: Path
    fingerprint: str | None
    content_type: str | None
    mime: str | None
    title: str | None
    size_bytes: int
    last_synced_at: datetime | None
    metadata: dict[str, Any] = field(default_factory=dict)
    store_status: dict[str, StoreStatus] = field(default_factory=dict)

    @property
    def extension(self) -> str:
        return self.path.suffix.lower().lstrip(".")

    def fully_indexed(self) -> bool:
        return all(self.store_status.get(name) is StoreStatus.OK for name in STORE_NAMES)

    def stores_needing_retry(self) -> list[str]:
        return [name for name in STORE_NAMES if self.store_status.get(name) is not StoreStatus.OK]


__all__ = ["Source", "Document", "SourceState", "StoreStatus", "STORE_NAMES"]
