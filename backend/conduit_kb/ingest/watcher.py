"""Filesystem watcher that schedules debounced source syncs."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from conduit_kb.core.errors import KnowledgeBaseError, SyncInProgress
from conduit_kb.core.logging import get_logger
from conduit_kb.ingest.sources import expand_patterns, matches_any
from conduit_kb.models.entities import Source

logger = get_logger(__name__)

SyncTrigger = Callable[[str], object]


@dataclass
class WatchedSource:
    id: str
    root: Path
    include: list[str]
    exclude: list[str]

    def relevant(self, path: Path) -> bool:
        try:
            rel_path = path.relative_to(self.root).as_posix()
        except ValueError:
            return False
        parts = rel_path.split("/")
        for idx, part in enumerate(parts[:-1]):
            if matches_any("/".join(parts[: idx + 1]), part, self.exclude):
                return False
        if matches_any(rel_path, path.name, self.exclude):
            return False
        return not self.include or matches_any(rel_path, path.name, self.include)


class SourceEventHandler(FileSystemEventHandler):
    """Forward file events under a source to the watcher."""

    def __init__(self, source: WatchedSource, notify: Callable[[str], None]) -> None:
        super().__init__()
        self.source = source
        self.notify = notify

    def on_created(self, event: FileSystemEvent) -> None:
        self._dispatch(event, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._dispatch(event, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._dispatch(event, event.src_path, event.dest_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._dispatch(event, event.src_path)

    def _dispatch(self, event: FileSystemEvent, *paths) -> None:
        if event.is_directory:
            return
        if any(self.source.relevant(Path(_as_str(path))) for path in paths if path):
            self.notify(self.source.id)


class SourceWatcher:
    """Watch source roots and run a sync shortly after files stop changing.

    Bursts of events for one source collapse into a single call to
    ``trigger`` once ``debounce_seconds`` pass without a new event. When a
    sync is already running for the source the trigger is re-armed, so
    changes made during that sync are picked up once it finishes.
    """

    def __init__(self, trigger: SyncTrigger, debounce_seconds: float = 2.0) -> None:
        self.trigger = trigger
        self.debounce_seconds = debounce_seconds
        self._observer: BaseObserver = Observer()
        self._lock = threading.Lock()
        self._sources: Dict[str, WatchedSource] = {}
        self._watches: Dict[str, ObservedWatch] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._started = False
        self._stopped = False

    def add_source(self, source: Source) -> SourceEventHandler:
        root = source.root if source.kind != "file" else source.root.parent
        watched = WatchedSource(
            id=source.id,
            root=root,
            include=expand_patterns(source.include) if source.kind != "file" else [source.root.name],
            exclude=expand_patterns(source.exclude),
        )
        handler = SourceEventHandler(watched, self.notify)
        with self._lock:
            if source.id in self._watches:
                self._observer.unschedule(self._watches.pop(source.id))
            self._watches[source.id] = self._observer.schedule(handler, str(root), recursive=source.kind != "file")
            self._sources[source.id] = watched
        logger.info("Watching source", extra={"ctx_source": source.id, "ctx_root": str(root)})
        return handler

    def remove_source(self, source_id: str) -> None:
        with self._lock:
            self._sources.pop(source_id, None)
            watch = self._watches.pop(source_id, None)
            timer = self._timers.pop(source_id, None)
            if watch is not None:
                self._observer.unschedule(watch)
        if timer is not None:
            timer.cancel()

    def notify(self, source_id: str) -> None:
        """Restart the debounce timer for ``source_id``."""
        with self._lock:
            previous = self._timers.get(source_id)
            timer = threading.Timer(self.debounce_seconds, self._fire, args=(source_id,))
            timer.daemon = True
            self._timers[source_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def pending(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)

    def start(self) -> None:
        with self._lock:
            self._stopped = False
            if self._started:
                return
            self._observer.start()
            self._started = True

    def stop(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._stopped = True
            started, self._started = self._started, False
        for timer in timers:
            timer.cancel()
        if started:
            self._observer.stop()
            self._observer.join(timeout=5)

    def _fire(self, source_id: str) -> None:
        with self._lock:
            timer = self._timers.get(source_id)
            if timer is not None and timer is threading.current_thread():
                del self._timers[source_id]
        try:
            self.trigger(source_id)
        except SyncInProgress:
            with self._lock:
                stopped = self._stopped
            if not stopped:
                logger.info("Source busy; sync re-armed", extra={"ctx_source": source_id})
                self.notify(source_id)
        except KnowledgeBaseError as exc:
            logger.warning("Watched sync did not run", extra={"ctx_source": source_id, "ctx_error": str(exc)})


def _as_str(path) -> str:
    return path.decode("utf-8", "surrogateescape") if isinstance(path, bytes) else str(path)


__all__ = ["SourceWatcher", "SourceEventHandler", "WatchedSource"]
