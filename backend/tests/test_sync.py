"""Tests for source registration and incremental sync."""

from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

from conduit_kb.core.cancellation import CancellationToken
from conduit_kb.core.config import Settings
from conduit_kb.core.errors import (
    AuthorizationDenied,
    SourceExists,
    SourceNotFound,
    SourceUnreachable,
    SyncInProgress,
)
from conduit_kb.core.events import SYNC_COMPLETED, SYNC_FAILED, SYNC_PROGRESS, SYNC_STARTED
from conduit_kb.engine import KnowledgeBase
from conduit_kb.models.entities import SourceState, StoreStatus
from conduit_kb.security.policy import AllowListPolicy

from conftest import VocabularyEmbedder


def _paths(response) -> list[str]:
    return [result.metadata["rel_path"] for result in response.results]


def _drain(subscription) -> list:
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


def test_sync_indexes_and_removes_documents(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    report = kb.sync(source_id)
    assert report.added == 2
    assert report.errored == 0
    assert report.store_errors == []

    response = kb.search("fox", mode="lexical")
    assert _paths(response)[0] == "a.md"
    assert response.results[0].source_id == source_id

    (docs_dir / "a.md").unlink()
    report = kb.sync(source_id)
    assert report.removed == 1
    assert report.unchanged == 1
    assert kb.search("fox", mode="lexical").results == []
    assert [document.rel_path for document in kb.list_documents(source_id)] == ["b.md"]


def test_second_sync_is_a_no_op(kb: KnowledgeBase, docs_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source_id = kb.register_source(docs_dir)
    kb.sync(source_id)
    calls: list[str] = []
    monkeypatch.setattr(kb.writers, "apply", lambda *args, **kwargs: calls.append("apply"))
    monkeypatch.setattr(kb.writers, "retire", lambda *args, **kwargs: calls.append("retire"))
    report = kb.sync(source_id)
    assert report.unchanged == 2
    assert report.total_changed == 0
    assert calls == []


def test_changes_detected_by_content_and_mtime(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    kb.sync(source_id)

    (docs_dir / "a.md").write_text("The quick brown fox jumps", encoding="utf-8")
    report = kb.sync(source_id)
    assert report.updated == 1
    assert report.unchanged == 1
    assert _paths(kb.search("jumps", mode="lexical")) == ["a.md"]

    path = docs_dir / "b.md"
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
    report = kb.sync(source_id)
    assert report.updated == 1
    assert report.unchanged == 1


def test_failed_store_is_retried_alone(kb: KnowledgeBase, docs_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    original_add = kb.graph._add
    broken = {"on": True}

    def flaky_add(document, chunks):
        if broken["on"]:
            raise RuntimeError("graph offline")
        return original_add(document, chunks)

    monkeypatch.setattr(kb.graph, "_add", flaky_add)
    source_id = kb.register_source(docs_dir)
    report = kb.sync(source_id)
    assert report.added == 2
    assert report.errored == 0
    assert sorted(error.store for error in report.store_errors) == ["graph", "graph"]
    for document in kb.list_documents(source_id):
        assert document.store_status["lexical"] is StoreStatus.OK
        assert document.store_status["graph"] is StoreStatus.FAILED
        assert not document.fully_indexed()

    broken["on"] = False
    applied: list[object] = []
    chunked: list[str] = []
    original_apply = kb.writers.apply
    original_chunk = kb.coordinator.chunker.chunk

    def spy_apply(document, chunks, stores=None):
        applied.append(stores)
        return original_apply(document, chunks, stores=stores)

    def spy_chunk(*args, **kwargs):
        chunked.append(args[0])
        return original_chunk(*args, **kwargs)

    monkeypatch.setattr(kb.writers, "apply", spy_apply)
    monkeypatch.setattr(kb.coordinator.chunker, "chunk", spy_chunk)
    report = kb.sync(source_id)
    assert report.retried == 2
    assert report.store_errors == []
    assert applied == [["graph"], ["graph"]]
    assert chunked == []
    assert all(document.fully_indexed() for document in kb.list_documents(source_id))

    report = kb.sync(source_id)
    assert report.unchanged == 2


def test_cancelled_sync_stops_before_work(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    token = CancellationToken()
    token.cancel()
    report = kb.sync(source_id, token=token)
    assert report.cancelled
    assert report.added == 0
    source = kb.get_source(source_id)
    assert source.state is SourceState.SYNCED
    assert source.last_error == "sync cancelled"
    assert source.last_synced_at is None

    report = kb.sync(source_id)
    assert report.added == 2
    assert kb.get_source(source_id).last_error is None


def test_unreachable_source_reports_error(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    kb.sync(source_id)
    subscription = kb.events.subscribe()
    shutil.rmtree(docs_dir)

    with pytest.raises(SourceUnreachable):
        kb.sync(source_id)
    source = kb.get_source(source_id)
    assert source.state is SourceState.ERROR
    assert "missing" in (source.last_error or "")
    types = [event.type for event in _drain(subscription)]
    assert types == [SYNC_STARTED, SYNC_FAILED]

    report = kb.sync()
    assert source_id in report.unreachable
    assert kb.search("fox", mode="lexical").results


def test_concurrent_sync_is_refused(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    with kb.sources.sync_lock(source_id):
        assert kb.sources.is_syncing(source_id)
        with pytest.raises(SyncInProgress):
            kb.sync(source_id)
        with pytest.raises(SyncInProgress):
            kb.unregister_source(source_id)
        report = kb.sync()
        assert report.added == 0
    assert not kb.sources.is_syncing(source_id)


def test_unregister_removes_everything(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    kb.sync(source_id)
    assert kb.lexical.count() == 2

    kb.unregister_source(source_id)
    assert kb.lexical.count() == 0
    assert kb.vector.count() == 0
    assert kb.graph.count() == 0
    assert kb.catalog.document_ids_for_source(source_id) == []
    assert kb.list_sources() == []
    with pytest.raises(SourceNotFound):
        kb.get_source(source_id)
    assert kb.search("fox").results == []


def test_excluded_directories_are_skipped(kb: KnowledgeBase, docs_dir: Path) -> None:
    for folder in ("node_modules/pkg", ".git"):
        target = docs_dir / folder
        target.mkdir(parents=True)
        (target / "notes.md").write_text("hidden fox", encoding="utf-8")
    source_id = kb.register_source(docs_dir)
    report = kb.sync(source_id)
    assert report.added == 2
    assert sorted(document.rel_path for document in kb.list_documents(source_id)) == ["a.md", "b.md"]


def test_custom_include_and_unsupported_files(kb: KnowledgeBase, docs_dir: Path) -> None:
    (docs_dir / "blob.bin").write_bytes(b"\x00\x01\x02\x03")
    (docs_dir / "notes.txt").write_text("ignored by include", encoding="utf-8")
    source_id = kb.register_source(docs_dir, include=["*.md", "*.bin"])
    report = kb.sync(source_id)
    assert report.added == 2
    assert report.skipped == 1
    assert report.errored == 0


def test_oversized_files_are_skipped(settings: Settings, docs_dir: Path) -> None:
    small = settings.model_copy(update={"max_file_bytes": 10})
    with KnowledgeBase(small, embedder=VocabularyEmbedder()) as kb:
        source_id = kb.register_source(docs_dir)
        report = kb.sync(source_id)
    assert report.skipped == 2
    assert report.added == 0


def test_single_file_source(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir / "a.md")
    assert kb.get_source(source_id).kind == "file"
    report = kb.sync(source_id)
    assert report.added == 1
    assert _paths(kb.search("fox", mode="lexical")) == ["a.md"]


def test_sync_events_in_order(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    subscription = kb.events.subscribe()
    kb.sync(source_id)
    events = _drain(subscription)
    assert [event.type for event in events] == [SYNC_STARTED, SYNC_PROGRESS, SYNC_PROGRESS, SYNC_COMPLETED]
    assert events[-1].payload["report"]["added"] == 2
    assert [event.payload["processed"] for event in events[1:3]] == [1, 2]
    assert all(event.source_id == source_id for event in events)


def test_source_stats_after_sync(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    assert kb.get_source(source_id).state is SourceState.NEVER_SYNCED
    kb.sync(source_id)
    source = kb.get_source(source_id)
    assert source.state is SourceState.SYNCED
    assert source.document_count == 2
    assert source.chunk_count == 2
    assert source.last_synced_at is not None
    status = kb.status()
    assert status["sources"] == 1
    assert status["index_sizes"] == {"lexical": 2, "vector": 2, "graph": 2}
    assert status["degraded"] == []


def test_registration_errors(kb: KnowledgeBase, docs_dir: Path, tmp_path: Path) -> None:
    kb.register_source(docs_dir)
    with pytest.raises(SourceExists):
        kb.register_source(docs_dir)
    with pytest.raises(SourceUnreachable):
        kb.register_source(tmp_path / "missing")
    with pytest.raises(SourceNotFound):
        kb.sync("src_unknown")


def test_authorizer_can_refuse_roots(settings: Settings, docs_dir: Path, tmp_path: Path) -> None:
    policy = AllowListPolicy(roots=[tmp_path / "allowed"])
    with KnowledgeBase(settings, embedder=VocabularyEmbedder(), authorizer=policy) as kb:
        with pytest.raises(AuthorizationDenied):
            kb.register_source(docs_dir)
        assert kb.list_sources() == []


def test_unsupported_rewrite_retires_document(kb: KnowledgeBase, docs_dir: Path) -> None:
    source_id = kb.register_source(docs_dir)
    kb.sync(source_id)
    assert _paths(kb.search("fox", mode="lexical")) == ["a.md"]

    (docs_dir / "a.md").write_bytes(b"\x00\x01binary\x00 fox")
    report = kb.sync(source_id)
    assert report.removed == 1
    assert report.skipped == 0
    assert report.unchanged == 1
    assert kb.search("fox", mode="lexical").results == []
    assert [document.rel_path for document in kb.list_documents(source_id)] == ["b.md"]
    assert kb.status()["index_sizes"] == {"lexical": 1, "vector": 1, "graph": 1}


def test_file_grown_past_limit_is_retired(settings: Settings, docs_dir: Path) -> None:
    small = settings.model_copy(update={"max_file_bytes": 30})
    with KnowledgeBase(small, embedder=VocabularyEmbedder()) as kb:
        source_id = kb.register_source(docs_dir)
        assert kb.sync(source_id).added == 2

        (docs_dir / "a.md").write_text("The quick brown fox " * 5, encoding="utf-8")
        report = kb.sync(source_id)
        assert report.removed == 1
        assert kb.search("fox", mode="lexical").results == []
        assert [document.rel_path for document in kb.list_documents(source_id)] == ["b.md"]

        report = kb.sync(source_id)
        assert report.skipped == 1
        assert report.removed == 0


def test_interrupted_commit_resumes_without_duplicates(
    kb: KnowledgeBase, docs_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source_id = kb.register_source(docs_dir)
    original = kb.catalog.commit_fingerprint
    calls = {"n": 0}

    def crash_once(document_id: str, digest: str) -> None:
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("process killed")
        original(document_id, digest)

    monkeypatch.setattr(kb.catalog, "commit_fingerprint", crash_once)
    first = kb.sync(source_id)
    assert first.errored == 1
    assert first.added == 1
    # Stores were written for both files before the crash.
    assert kb.status()["index_sizes"] == {"lexical": 2, "vector": 2, "graph": 2}

    second = kb.sync(source_id)
    assert second.errored == 0
    assert second.updated == 1
    assert second.unchanged == 1
    assert kb.status()["index_sizes"] == {"lexical": 2, "vector": 2, "graph": 2}
    for document in kb.list_documents(source_id):
        assert document.fingerprint is not None
        for chunk in kb.catalog.chunks_for_document(document.id):
            assert kb.lexical.indexed_rows(chunk.id) == 1
    assert _paths(kb.search("fox", mode="lexical")) == ["a.md"]
    assert kb.sync(source_id).unchanged == 2


def test_cancel_mid_sync_finishes_in_flight_document(
    settings: Settings, docs_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (docs_dir / "c.md").write_text("A cat watches the graph", encoding="utf-8")
    serial = settings.model_copy(update={"sync_workers": 1})
    token = CancellationToken()
    with KnowledgeBase(serial, embedder=VocabularyEmbedder()) as kb:
        source_id = kb.register_source(docs_dir)
        chunker = kb.coordinator.chunker
        original = chunker.chunk

        def cancel_during_first(*args, **kwargs):
            token.cancel()
            return original(*args, **kwargs)

        monkeypatch.setattr(chunker, "chunk", cancel_during_first)
        report = kb.sync(source_id, token=token)

        assert report.cancelled
        assert report.added == 1
        documents = kb.list_documents(source_id)
        assert len(documents) == 1
        assert documents[0].fully_indexed()
        assert documents[0].fingerprint is not None
        assert kb.status()["index_sizes"] == {"lexical": 1, "vector": 1, "graph": 1}

        monkeypatch.setattr(chunker, "chunk", original)
        resumed = kb.sync(source_id)
        assert resumed.added == 2
        assert resumed.unchanged == 1


def test_failing_source_does_not_stop_sync_all(
    kb: KnowledgeBase, docs_dir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    other = tmp_path / "other"
    other.mkdir()
    (other / "c.md").write_text("A cat chases the fox", encoding="utf-8")
    broken_id = kb.register_source(docs_dir)
    healthy_id = kb.register_source(other)
    original = kb.coordinator.sync_source

    def sync_source(source_id: str, token=None):
        if source_id == broken_id:
            raise RuntimeError("disk vanished")
        return original(source_id, token)

    monkeypatch.setattr(kb.coordinator, "sync_source", sync_source)
    report = kb.sync()
    assert report.added == 1
    assert sorted(report.source_ids) == sorted([broken_id, healthy_id])
    assert [(error.kind, error.message) for error in report.errors] == [("source", "disk vanished")]
    assert _paths(kb.search("cat", mode="lexical")) == ["c.md"]
