"""Tests for the lexical, vector and graph stores and their writers."""

from __future__ import annotations

from pathlib import Path

import pytest

from conduit_kb.core.errors import EmbeddingUnavailable
from conduit_kb.db.sqlite import SQLiteDatabase
from conduit_kb.ingest.embeddings import HashingEmbedder
from conduit_kb.ingest.entities import HeuristicEntityExtractor
from conduit_kb.ingest.types import Chunk, IndexedDocument
from conduit_kb.models.dto import SearchFilters
from conduit_kb.stores import GraphStore, IndexWriters, KeyedLocks, LexicalStore, VectorStore

from conftest import BrokenEmbedder, VocabularyEmbedder


def _document(doc_id: str, content_type: str = "markdown", extension: str = "md") -> IndexedDocument:
    return IndexedDocument(
        id=doc_id,
        source_id="src-1",
        content_type=content_type,
        extension=extension,
        path=f"/docs/{doc_id}.{extension}",
    )


def _chunks(doc_id: str, *texts: str) -> list[Chunk]:
    chunks = []
    offset = 0
    for ordinal, text in enumerate(texts):
        chunks.append(
            Chunk(
                id=f"{doc_id}-c{ordinal}",
                document_id=doc_id,
                ordinal=ordinal,
                text=text,
                start_char=offset,
                end_char=offset + len(text),
                overlap_start=offset,
                token_count=len(text.split()),
                tag="prose",
            )
        )
        offset += len(text)
    return chunks


@pytest.fixture
def lexical(tmp_path: Path):
    store = LexicalStore(SQLiteDatabase(tmp_path / "lexical.db"))
    yield store
    store.close()


def test_lexical_apply_is_idempotent(lexical: LexicalStore) -> None:
    chunks = _chunks("d1", "The quick brown fox")
    assert lexical.apply(_document("d1"), chunks) == (1, 0)
    assert lexical.apply(_document("d1"), chunks) == (0, 0)
    assert lexical.count() == 1

    replaced = _chunks("d1", "The quick brown fox", "jumps over")
    replaced[0].id = "d1-new"
    assert lexical.apply(_document("d1"), replaced) == (2, 1)
    assert lexical.chunk_ids("d1") == {"d1-new", "d1-c1"}


def test_lexical_search_and_retire(lexical: LexicalStore) -> None:
    lexical.apply(_document("d1"), _chunks("d1", "The quick brown fox"))
    lexical.apply(_document("d2"), _chunks("d2", "A lazy dog sleeps"))
    hits = lexical.search("fox", None, 10)
    assert [hit.chunk_id for hit in hits] == ["d1-c0"]
    assert hits[0].document_id == "d1"
    assert hits[0].score > 0

    assert lexical.retire("d1") == 1
    assert lexical.search("fox", None, 10) == []
    assert lexical.retire("d1") == 0


def test_lexical_fuzzy_expansion(lexical: LexicalStore) -> None:
    lexical.apply(_document("d1"), _chunks("d1", "The quick brown fox"))
    hits = lexical.search("brwn", None, 10)
    assert [hit.chunk_id for hit in hits] == ["d1-c0"]


def test_lexical_phrase_boost(lexical: LexicalStore) -> None:
    lexical.apply(_document("d1"), _chunks("d1", "the fox is quick", "quick fox"))
    plain = {hit.chunk_id: hit.score for hit in lexical.search("quick fox", None, 10)}
    hits = lexical.search('"quick fox"', None, 10)
    assert [hit.chunk_id for hit in hits] == ["d1-c1", "d1-c0"]
    assert hits[0].score == pytest.approx(plain["d1-c1"] * 1.5)
    assert hits[1].score == pytest.approx(plain["d1-c0"])


def test_lexical_phrase_needs_adjacent_words(lexical: LexicalStore) -> None:
    lexical.apply(_document("d1"), _chunks("d1", "fox and quick dogs", "the quick fox"))
    lexical.apply(_document("d2"), _chunks("d2", "quick brown fox"))
    plain = {hit.chunk_id: hit.score for hit in lexical.search("quick fox", None, 10)}
    boosted = {hit.chunk_id: hit.score for hit in lexical.search('"quick fox"', None, 10)}
    assert boosted["d1-c1"] == pytest.approx(plain["d1-c1"] * 1.5)
    assert boosted["d1-c0"] == pytest.approx(plain["d1-c0"])
    assert boosted["d2-c0"] == pytest.approx(plain["d2-c0"])


def test_lexical_matches_identifiers_and_parts(lexical: LexicalStore) -> None:
    lexical.apply(_document("d1", "code", "py"), _chunks("d1", "def parse_config(path):\n    return load(path)"))
    lexical.apply(_document("d2"), _chunks("d2", "The config file lives in storage"))
    lexical.apply(_document("d3"), _chunks("d3", "A lazy dog sleeps"))
    lexical.apply(_document("d4"), _chunks("d4", "The quick brown fox"))
    hits = lexical.search("parse_config", None, 10)
    assert [hit.chunk_id for hit in hits] == ["d1-c0", "d2-c0"]
    assert hits[0].score > 2 * hits[1].score
    assert {hit.chunk_id for hit in lexical.search("config", None, 10)} == {"d1-c0", "d2-c0"}


def test_lexical_scores_follow_term_rarity(lexical: LexicalStore) -> None:
    lexical.apply(_document("d1"), _chunks("d1", "fox fox graph", "fox index", "fox storage"))
    hits = lexical.search("fox graph", None, 10)
    assert hits[0].chunk_id == "d1-c0"
    assert all(hit.score > 0 for hit in hits)
    assert len(hits) == 3


def test_lexical_rewrite_never_duplicates_rows(lexical: LexicalStore) -> None:
    chunks = _chunks("d1", "The quick brown fox")
    lexical.apply(_document("d1"), chunks)
    # Full-text row left behind by a write whose registration was lost.
    with lexical.db.transaction() as cursor:
        cursor.execute("DELETE FROM lexical_chunks WHERE chunk_id = ?", ["d1-c0"])
    assert lexical.apply(_document("d1"), chunks) == (1, 0)
    assert lexical.indexed_rows("d1-c0") == 1
    assert [hit.chunk_id for hit in lexical.search("fox", None, 10)] == ["d1-c0"]


def test_lexical_filters(lexical: LexicalStore) -> None:
    lexical.apply(_document("d1"), _chunks("d1", "fox notes"))
    lexical.apply(_document("d2", "code", "py"), _chunks("d2", "fox = 1"))
    by_type = lexical.search("fox", SearchFilters(content_types=["code"]), 10)
    assert [hit.document_id for hit in by_type] == ["d2"]
    by_extension = lexical.search("fox", SearchFilters(extensions=[".MD"]), 10)
    assert [hit.document_id for hit in by_extension] == ["d1"]


def test_vector_search_respects_min_score(tmp_path: Path) -> None:
    store = VectorStore(SQLiteDatabase(tmp_path / "vector.db"), VocabularyEmbedder(), min_score=0.2)
    store.apply(_document("d1"), _chunks("d1", "quick brown fox"))
    store.apply(_document("d2"), _chunks("d2", "lazy dog sleeps"))
    hits = store.search("fox", None, 10)
    assert [hit.document_id for hit in hits] == ["d1"]
    assert hits[0].score == pytest.approx(1 / 3 ** 0.5)
    assert store.search("python", None, 10) == []
    store.close()


def test_vector_search_can_exclude_a_document(tmp_path: Path) -> None:
    store = VectorStore(SQLiteDatabase(tmp_path / "vector.db"), VocabularyEmbedder())
    store.apply(_document("d1"), _chunks("d1", "quick brown fox"))
    store.apply(_document("d2"), _chunks("d2", "quick fox jumps"))
    vector = store.embedder.embed("quick brown fox")
    assert [hit.document_id for hit in store.search_vector(vector, None, 10)] == ["d1", "d2"]
    assert [hit.document_id for hit in store.search_vector(vector, None, 10, exclude_document="d1")] == ["d2"]
    store.close()


def test_vector_store_purges_other_models(tmp_path: Path) -> None:
    path = tmp_path / "vector.db"
    store = VectorStore(SQLiteDatabase(path), VocabularyEmbedder())
    store.apply(_document("d1"), _chunks("d1", "quick brown fox"))
    store.close()

    reopened = VectorStore(SQLiteDatabase(path), HashingEmbedder("other-model", dim=20))
    assert reopened.stale_documents == {"d1"}
    assert reopened.count() == 0
    assert reopened.size == 0
    reopened.close()


def test_vector_write_fails_without_embedder(tmp_path: Path) -> None:
    store = VectorStore(SQLiteDatabase(tmp_path / "vector.db"), BrokenEmbedder())
    with pytest.raises(EmbeddingUnavailable):
        store.apply(_document("d1"), _chunks("d1", "quick brown fox"))
    assert store.count() == 0
    store.close()


def test_graph_scores_direct_mentions_above_neighbors(tmp_path: Path) -> None:
    store = GraphStore(SQLiteDatabase(tmp_path / "graph.db"), HeuristicEntityExtractor())
    store.apply(_document("d1"), _chunks("d1", "Ada Lovelace worked with Charles Babbage."))
    store.apply(_document("d2"), _chunks("d2", "The engine designed by Charles Babbage."))
    assert store.entity_count() == 2

    hits = store.search("Ada Lovelace", None, 10)
    assert [hit.document_id for hit in hits] == ["d1", "d2"]
    assert hits[0].score == pytest.approx(1.12)
    assert hits[1].score == pytest.approx(0.32)

    names = {entity["name"] for entity in store.entities_for_chunk("d1-c0")}
    assert names == {"Ada Lovelace", "Charles Babbage"}
    store.close()


def test_graph_retire_drops_orphaned_entities(tmp_path: Path) -> None:
    store = GraphStore(SQLiteDatabase(tmp_path / "graph.db"), HeuristicEntityExtractor())
    store.apply(_document("d1"), _chunks("d1", "Ada Lovelace worked with Charles Babbage."))
    store.apply(_document("d2"), _chunks("d2", "The engine designed by Charles Babbage."))
    store.retire("d1")
    assert store.entity_count() == 1
    hits = store.search("Charles Babbage", None, 10)
    assert [hit.document_id for hit in hits] == ["d2"]
    assert store.search("Ada Lovelace", None, 10) == []
    store.close()


def test_keyed_locks_released() -> None:
    locks = KeyedLocks()
    with locks.hold(["b", "a", "a"]):
        assert len(locks) == 2
    assert len(locks) == 0


class _FlakyStore:
    name = "flaky"

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or RuntimeError("disk busy")
        self.calls = 0

    def apply(self, document, chunks):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return len(chunks), 0

    def retire(self, document_id):
        return 0

    def count(self) -> int:
        return 0


def test_writers_retry_transient_failures() -> None:
    store = _FlakyStore(failures=1)
    writers = IndexWriters({"flaky": store}, retries=3, max_backoff=0.01)
    outcome = writers.apply(_document("d1"), _chunks("d1", "text"))
    writers.close()
    assert outcome.ok
    assert outcome.succeeded == ["flaky"]
    assert store.calls == 2


def test_writers_report_persistent_failure() -> None:
    store = _FlakyStore(failures=10)
    writers = IndexWriters({"flaky": store}, retries=2, max_backoff=0.01)
    outcome = writers.apply(_document("d1"), _chunks("d1", "text"))
    writers.close()
    assert not outcome.ok
    assert isinstance(outcome.errors["flaky"], RuntimeError)
    assert store.calls == 2


def test_writers_do_not_retry_capability_errors() -> None:
    store = _FlakyStore(failures=10, error=EmbeddingUnavailable("model offline"))
    seen: list[str] = []
    writers = IndexWriters(
        {"flaky": store},
        retries=3,
        max_backoff=0.01,
        on_capability_error=lambda name, exc: seen.append(name),
    )
    outcome = writers.apply(_document("d1"), _chunks("d1", "text"))
    writers.close()
    assert isinstance(outcome.errors["flaky"], EmbeddingUnavailable)
    assert store.calls == 1
    assert seen == ["flaky"]
