"""Tests for the debounced source watcher."""

from __future__ import annotations

import threading
import time
from pathlib import Path

from watchdog.events import DirModifiedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from conduit_kb.core.errors import SourceNotFound, SyncInProgress
from conduit_kb.engine import KnowledgeBase
from conduit_kb.ingest.watcher import SourceEventHandler, SourceWatcher, WatchedSource


def test_handler_filters_irrelevant_paths(tmp_path: Path) -> None:
    seen: list[str] = []
    watched = WatchedSource(id="src_1", root=tmp_path, include=["*.md"], exclude=["node_modules"])
    handler = SourceEventHandler(watched, seen.append)

    handler.dispatch(FileModifiedEvent(str(tmp_path / "a.md")))
    handler.dispatch(FileModifiedEvent(str(tmp_path / "a.txt")))
    handler.dispatch(FileModifiedEvent(str(tmp_path / "node_modules" / "pkg" / "x.md")))
    handler.dispatch(DirModifiedEvent(str(tmp_path / "guide")))
    handler.dispatch(FileMovedEvent(str(tmp_path / "draft.tmp"), str(tmp_path / "final.md")))
    assert seen == ["src_1", "src_1"]


def test_bursts_collapse_into_one_trigger() -> None:
    calls: list[str] = []
    fired = threading.Event()

    def trigger(source_id: str) -> None:
        calls.append(source_id)
        fired.set()

    watcher = SourceWatcher(trigger, debounce_seconds=0.05)
    for _ in range(5):
        watcher.notify("src_1")
    assert watcher.pending() == ["src_1"]
    assert fired.wait(2.0)
    time.sleep(0.15)
    assert calls == ["src_1"]
    assert watcher.pending() == []
    watcher.stop()


def test_trigger_errors_are_contained() -> None:
    calls: list[str] = []
    fired = threading.Event()

    def trigger(source_id: str) -> None:
        calls.append(source_id)
        fired.set()
        raise SourceNotFound(source_id)

    watcher = SourceWatcher(trigger, debounce_seconds=0.01)
    watcher.notify("src_1")
    assert fired.wait(2.0)
    time.sleep(0.1)
    assert calls == ["src_1"]
    assert watcher.pending() == []
    watcher.stop()


def test_busy_source_is_retried() -> None:
    calls: list[str] = []
    done = threading.Event()

    def trigger(source_id: str) -> None:
        calls.append(source_id)
        if len(calls) < 3:
            raise SyncInProgress("busy", source_id=source_id)
        done.set()

    watcher = SourceWatcher(trigger, debounce_seconds=0.02)
    watcher.notify("src_1")
    assert done.wait(2.0)
    time.sleep(0.1)
    assert calls == ["src_1", "src_1", "src_1"]
    assert watcher.pending() == []
    watcher.stop()


def test_busy_retry_stops_with_watcher() -> None:
    calls: list[str] = []
    fired = threading.Event()

    def trigger(source_id: str) -> None:
        calls.append(source_id)
        fired.set()
        raise SyncInProgress("busy", source_id=source_id)

    watcher = SourceWatcher(trigger, debounce_seconds=0.05)
    watcher.notify("src_1")
    assert fired.wait(2.0)
    watcher.stop()
    seen = len(calls)
    time.sleep(0.2)
    assert len(calls) <= seen + 1
    assert watcher.pending() == []


def test_watched_source_triggers_sync(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    done = threading.Event()
    reports = []

    def trigger(target: str) -> None:
        reports.append(kb.sync(target))
        done.set()

    watcher = SourceWatcher(trigger, debounce_seconds=0.05)
    handler = watcher.add_source(kb.get_source(source_id))
    assert handler.source.root == docs_dir.resolve()

    (docs_dir / "c.md").write_text("A cat sleeps", encoding="utf-8")
    handler.dispatch(FileCreatedEvent(str(docs_dir.resolve() / "c.md")))
    assert done.wait(5.0)
    watcher.remove_source(source_id)
    watcher.stop()
    assert reports[0].added == 3
    assert [result.metadata["rel_path"] for result in kb.search("cat", mode="lexical").results] == ["c.md"]


def test_file_source_watches_parent(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir / "a.md")
    watcher = SourceWatcher(lambda target: None)
    handler = watcher.add_source(kb.get_source(source_id))
    assert handler.source.root == docs_dir.resolve()
    assert handler.source.relevant(docs_dir.resolve() / "a.md")
    assert not handler.source.relevant(docs_dir.resolve() / "b.md")
    watcher.remove_source(source_id)


def test_edits_during_running_sync_are_picked_up(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    kb.sync(source_id)
    done = threading.Event()
    reports = []

    def trigger(target: str) -> None:
        reports.append(kb.sync(target))
        done.set()

    watcher = SourceWatcher(trigger, debounce_seconds=0.02)
    with kb.sources.sync_lock(source_id):
        (docs_dir / "a.md").write_text("The quick brown fox jumps", encoding="utf-8")
        watcher.notify(source_id)
        time.sleep(0.15)
        assert not done.is_set()
    assert done.wait(5.0)
    watcher.stop()
    assert reports[0].updated == 1
    assert [result.metadata["rel_path"] for result in kb.search("jumps", mode="lexical").results] == ["a.md"]
