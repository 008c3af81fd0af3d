"""Full-text store ranked by SQLite FTS5 ``bm25()``."""

from __future__ import annotations

import re
import threading
from collections import defaultdict
from typing import Sequence

from rapidfuzz import fuzz, process

from conduit_kb.db.sqlite import SQLiteDatabase, placeholders
from conduit_kb.ingest.types import Chunk, IndexedDocument
from conduit_kb.models.dto import SearchFilters
from conduit_kb.stores.base import IndexStore, StoreHit, filter_clause
from conduit_kb.utils.text import index_terms

_PHRASE_RE = re.compile(r'"([^"]+)"')
_WORD_RE = re.compile(r"\w")

# ``body`` holds the chunk text for phrase queries, ``terms`` the expanded
# index terms (identifier parts included) used for ranking.
SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS lexical_fts USING fts5(
  chunk_id UNINDEXED,
  body,
  terms,
  tokenize = "unicode61 tokenchars '_'"
);
CREATE VIRTUAL TABLE IF NOT EXISTS lexical_vocab USING fts5vocab(lexical_fts, 'col');
"""

# bm25() column weights in declaration order: chunk_id, body, terms.
_RANK_SQL = "bm25(lexical_fts, 0.0, 0.0, 1.0)"


class LexicalStore(IndexStore):
    """BM25 over an FTS5 index.

    Query terms are matched against the ``terms`` column. Terms of four or
    more characters are also expanded to close vocabulary matches with
    rapidfuzz; those matches score at a discount. Quoted phrases in the query
    boost chunks whose text contains them.
    """

    name = "lexical"

    def __init__(
        self,
        db: SQLiteDatabase,
        fuzzy_cutoff: float = 85.0,
        fuzzy_weight: float = 0.5,
        phrase_boost: float = 1.5,
    ) -> None:
        super().__init__(db, SCHEMA)
        self.fuzzy_cutoff = fuzzy_cutoff
        self.fuzzy_weight = fuzzy_weight
        self.phrase_boost = phrase_boost
        self._vocabulary: list[str] | None = None
        self._vocab_lock = threading.Lock()

    def search(self, query: str, filters: SearchFilters | None, top_k: int) -> list[StoreHit]:
        exact = list(dict.fromkeys(index_terms(query)))
        if not exact:
            return []
        scores: dict[str, float] = defaultdict(float)
        owners: dict[str, str] = {}
        for chunk_id, document_id, score in self._match(_any_term(exact), filters, top_k):
            scores[chunk_id] += score
            owners[chunk_id] = document_id
        for candidate, weight in self._expand(exact).items():
            for chunk_id, document_id, score in self._match(_any_term([candidate]), filters, top_k):
                scores[chunk_id] += weight * score
                owners[chunk_id] = document_id
        phrases = [phrase for phrase in _PHRASE_RE.findall(query) if _WORD_RE.search(phrase)]
        if phrases and scores:
            self._boost_phrases(scores, phrases)
        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))[:top_k]
        return [StoreHit(chunk_id=chunk_id, document_id=owners[chunk_id], score=score) for chunk_id, score in ranked]

    def vocabulary(self) -> list[str]:
        with self._vocab_lock:
            if self._vocabulary is None:
                rows = self.db.query("SELECT DISTINCT term FROM lexical_vocab WHERE col = 'terms'")
                self._vocabulary = [row["term"] for row in rows]
            return self._vocabulary

    def indexed_rows(self, chunk_id: str) -> int:
        """Number of full-text rows held for ``chunk_id``."""
        row = self.db.query_one("SELECT COUNT(*) AS n FROM lexical_fts WHERE chunk_id = ?", [chunk_id])
        return int(row["n"]) if row else 0

    # Internal helpers -------------------------------------------------

    def _match(self, expression: str, filters: SearchFilters | None, limit: int) -> list[tuple[str, str, float]]:
        where, params = filter_clause(filters, "c")
        rows = self.db.query(
            f"""
            SELECT lexical_fts.chunk_id AS chunk_id, c.document_id AS document_id, -{_RANK_SQL} AS score
            FROM lexical_fts
            JOIN lexical_chunks c ON c.chunk_id = lexical_fts.chunk_id
            WHERE lexical_fts MATCH ?{where}
            ORDER BY score DESC, lexical_fts.chunk_id
            LIMIT ?
            """,
            [expression, *params, limit],
        )
        return [(row["chunk_id"], row["document_id"], float(row["score"])) for row in rows]

    def _expand(self, terms: Sequence[str]) -> dict[str, float]:
        """Fuzzy neighbours of ``terms`` mapped to their discounted weight."""
        weighted: dict[str, float] = {}
        if self.fuzzy_cutoff >= 100:
            return weighted
        exact = set(terms)
        vocabulary = None
        for term in terms:
            if len(term) < 4:
                continue
            vocabulary = vocabulary if vocabulary is not None else self.vocabulary()
            if not vocabulary:
                break
            for candidate, score, _ in process.extract(
                term,
                vocabulary,
                scorer=fuzz.ratio,
                score_cutoff=self.fuzzy_cutoff,
                limit=3,
            ):
                if candidate in exact:
                    continue
                discounted = self.fuzzy_weight * score / 100.0
                weighted[candidate] = max(weighted.get(candidate, 0.0), discounted)
        return weighted

    def _boost_phrases(self, scores: dict[str, float], phrases: Sequence[str]) -> None:
        chunk_ids = list(scores)
        for phrase in phrases:
            rows = self.db.query(
                f"""
                SELECT chunk_id FROM lexical_fts
                WHERE lexical_fts MATCH ? AND chunk_id IN ({placeholders(chunk_ids)})
                """,
                [f'body : "{phrase}"', *chunk_ids],
            )
            for row in rows:
                scores[row["chunk_id"]] *= self.phrase_boost

    def _add(self, document: IndexedDocument, chunks: Sequence[Chunk]) -> None:
        rows = [(chunk.id, chunk.text, " ".join(index_terms(chunk.text))) for chunk in chunks]
        with self.db.transaction() as cursor:
            # A row may survive an interrupted write; never index a chunk twice.
            cursor.executemany("DELETE FROM lexical_fts WHERE chunk_id = ?", [(chunk.id,) for chunk in chunks])
            self._register_chunks(cursor, document, chunks)
            cursor.executemany("INSERT INTO lexical_fts (chunk_id, body, terms) VALUES (?, ?, ?)", rows)
        self._invalidate()

    def _remove(self, chunk_ids: Sequence[str]) -> None:
        params = [(chunk_id,) for chunk_id in chunk_ids]
        with self.db.transaction() as cursor:
            cursor.executemany("DELETE FROM lexical_fts WHERE chunk_id = ?", params)
            self._unregister_chunks(cursor, chunk_ids)
        self._invalidate()

    def _invalidate(self) -> None:
        with self._vocab_lock:
            self._vocabulary = None


def _any_term(terms: Sequence[str]) -> str:
    return " OR ".join(f'terms : "{term}"' for term in terms)


__all__ = ["LexicalStore"]
