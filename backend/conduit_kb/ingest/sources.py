"""Source registration and file enumeration."""

from __future__ import annotations

import fnmatch
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

from conduit_kb.core.config import Settings
from conduit_kb.core.errors import (
    AuthorizationDenied,
    SourceExists,
    SourceNotFound,
    SourceUnreachable,
    SyncInProgress,
)
from conduit_kb.core.events import SOURCE_REGISTERED, SOURCE_REMOVED, EventBus
from conduit_kb.core.logging import get_logger
from conduit_kb.db.catalog import Catalog
from conduit_kb.models.entities import Source, SourceState
from conduit_kb.security.policy import AllowListPolicy, Authorizer, is_within
from conduit_kb.utils.ids import stable_id
from conduit_kb.utils.time import utc_now

logger = get_logger(__name__)


@dataclass(slots=True)
class SourceFile:
    rel_path: str
    path: Path


class SourceManager:
    """Registers sources, lists their files and guards concurrent syncs."""

    def __init__(
        self,
        catalog: Catalog,
        settings: Settings,
        events: EventBus,
        authorizer: Authorizer | None = None,
    ) -> None:
        self.catalog = catalog
        self.settings = settings
        self.events = events
        self.authorizer = authorizer or AllowListPolicy(settings.allowed_roots)
        self._guard = threading.Lock()
        self._syncing: set[str] = set()

    def register(
        self,
        path: Path | str,
        include: Sequence[str] | None = None,
        exclude: Sequence[str] | None = None,
    ) -> Source:
        root = Path(path).expanduser().resolve()
        decision = self.authorizer.authorize(root)
        if not decision.allowed:
            raise AuthorizationDenied(decision.reason or f"Access to {root} was denied", path=str(root))
        if not root.exists():
            raise SourceUnreachable(f"Source path {root} does not exist")
        existing = self.catalog.find_source_by_root(root)
        if existing is not None:
            raise SourceExists(f"Source already registered for {root}", source_id=existing.id)
        now = utc_now()
        source = Source(
            id=stable_id("src", root.as_posix()),
            root=root,
            kind="file" if root.is_file() else "directory",
            include=list(include) if include else list(self.settings.default_include),
            exclude=list(exclude) if exclude is not None else list(self.settings.default_exclude),
            readonly_paths=list(decision.readonly_paths),
            state=SourceState.NEVER_SYNCED,
            last_error=None,
            last_synced_at=None,
            document_count=0,
            chunk_count=0,
            created_at=now,
            updated_at=now,
        )
        self.catalog.insert_source(source)
        logger.info("Registered source", extra={"ctx_source": source.id, "ctx_root": str(root)})
        self.events.publish(SOURCE_REGISTERED, source_id=source.id, root=str(root))
        return source

    def get(self, source_id: str) -> Source:
        source = self.catalog.get_source(source_id)
        if source is None:
            raise SourceNotFound(f"Source {source_id} not found")
        return source

    def list_sources(self) -> list[Source]:
        return self.catalog.list_sources()

    def forget(self, source_id: str) -> None:
        """Drop a source's catalog rows; store cleanup is the caller's job."""
        self.catalog.delete_source(source_id)
        logger.info("Removed source", extra={"ctx_source": source_id})
        self.events.publish(SOURCE_REMOVED, source_id=source_id)

    def is_syncing(self, source_id: str) -> bool:
        with self._guard:
            return source_id in self._syncing

    @contextmanager
    def sync_lock(self, source_id: str) -> Iterator[None]:
        """Claim a source for syncing or raise ``SyncInProgress`` at once."""
        with self._guard:
            if source_id in self._syncing:
                raise SyncInProgress(f"Source {source_id} is already syncing", source_id=source_id)
            self._syncing.add(source_id)
        try:
            yield
        finally:
            with self._guard:
                self._syncing.discard(source_id)

    def enumerate(self, source: Source) -> list[SourceFile]:
        root = source.root
        if not root.exists():
            raise SourceUnreachable(f"Source root {root} is missing", source_id=source.id)
        if not os.access(root, os.R_OK):
            raise SourceUnreachable(f"Source root {root} is not readable", source_id=source.id)
        if source.kind == "file" or root.is_file():
            if not self._readable(source, root):
                return []
            return [SourceFile(rel_path=root.name, path=root)]

        include = expand_patterns(source.include)
        exclude = expand_patterns(source.exclude)
        files: list[SourceFile] = []

        def on_error(exc: OSError) -> None:
            if Path(exc.filename or "") == root:
                raise SourceUnreachable(f"Cannot list {root}: {exc}", source_id=source.id) from exc
            logger.warning("Skipping unreadable directory", extra={"ctx_path": exc.filename, "ctx_error": str(exc)})

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            base = Path(dirpath)
            rel_dir = base.relative_to(root).as_posix()
            dirnames[:] = sorted(
                name for name in dirnames if not _excluded(_join(rel_dir, name), name, exclude, directory=True)
            )
            for name in sorted(filenames):
                rel_path = _join(rel_dir, name)
                path = base / name
                if path.is_symlink() or _excluded(rel_path, name, exclude):
                    continue
                if include and not matches_any(rel_path, name, include):
                    continue
                if not self._readable(source, path):
                    continue
                files.append(SourceFile(rel_path=rel_path, path=path))
        return files

    def _readable(self, source: Source, path: Path) -> bool:
        if not source.readonly_paths:
            return True
        return any(is_within(path, allowed) for allowed in source.readonly_paths)


def expand_patterns(patterns: Sequence[str]) -> list[str]:
    """Expand ``{a,b}`` alternatives in glob patterns."""
    expanded: list[str] = []
    for pattern in patterns:
        pattern = pattern.strip()
        if pattern:
            expanded.extend(_expand_braces(pattern))
    return expanded


def matches_any(rel_path: str, name: str, patterns: Sequence[str]) -> bool:
    for pattern in patterns:
        if fnmatch.fnmatchcase(name, pattern) or fnmatch.fnmatchcase(rel_path, pattern):
            return True
        if pattern.startswith("**/") and fnmatch.fnmatchcase(rel_path, pattern[3:]):
            return True
    return False


def _excluded(rel_path: str, name: str, patterns: Sequence[str], directory: bool = False) -> bool:
    if matches_any(rel_path, name, patterns):
        return True
    if directory:
        return matches_any(rel_path + "/", name + "/", patterns)
    return False


def _expand_braces(pattern: str) -> list[str]:
    start = pattern.find("{")
    end = pattern.find("}", start + 1)
    if start == -1 or end == -1:
        return [pattern]
    prefix, suffix = pattern[:start], pattern[end + 1 :]
    options = pattern[start + 1 : end].split(",")
    results: list[str] = []
    for option in options:
        results.extend(_expand_braces(f"{prefix}{option.strip()}{suffix}"))
    return results


def _join(rel_dir: str, name: str) -> str:
    return name if rel_dir in ("", ".") else f"{rel_dir}/{name}"


__all__ = ["SourceManager", "SourceFile", "expand_patterns", "matches_any"]
