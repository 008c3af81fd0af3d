"""Entity/relation graph store with chunk provenance."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Sequence

from rapidfuzz import fuzz, process

from conduit_kb.core.logging import get_logger
from conduit_kb.db.sqlite import SQLiteDatabase, placeholders
from conduit_kb.ingest.entities import EntityExtractor, EntityValidator, entity_id, normalize_name
from conduit_kb.ingest.types import Chunk, ExtractedEntity, IndexedDocument
from conduit_kb.models.dto import SearchFilters
from conduit_kb.stores.base import IndexStore, StoreHit, filter_clause
from conduit_kb.utils.text import STOP_WORDS, words

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  norm_name TEXT NOT NULL,
  type TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entities_norm ON entities(norm_name);
CREATE TABLE IF NOT EXISTS mentions (
  entity_id TEXT NOT NULL,
  chunk_id TEXT NOT NULL,
  confidence REAL NOT NULL,
  PRIMARY KEY (entity_id, chunk_id)
);
CREATE INDEX IF NOT EXISTS idx_mentions_chunk ON mentions(chunk_id);
CREATE TABLE IF NOT EXISTS relations (
  source_entity TEXT NOT NULL,
  target_entity TEXT NOT NULL,
  type TEXT NOT NULL,
  chunk_id TEXT NOT NULL,
  confidence REAL NOT NULL,
  PRIMARY KEY (source_entity, target_entity, type, chunk_id)
);
CREATE INDEX IF NOT EXISTS idx_relations_chunk ON relations(chunk_id);
CREATE INDEX IF NOT EXISTS idx_relations_target ON relations(target_entity);
"""

NEIGHBOR_DECAY = 0.5
_MAX_NGRAM = 3


class GraphStore(IndexStore):
    """Stores extracted entities as nodes, mentions and relations as edges.

    Every mention and relation row carries the chunk it was extracted from,
    so retiring a chunk removes exactly its contribution; entities left with
    no edges are deleted. Queries resolve names in the query text to entity
    nodes (exact, then fuzzy) and score chunks by direct mentions plus
    mentions of one-hop neighbours at ``NEIGHBOR_DECAY``.
    """

    name = "graph"

    def __init__(
        self,
        db: SQLiteDatabase,
        extractor: EntityExtractor,
        validator: EntityValidator | None = None,
        fuzzy_cutoff: float = 85.0,
    ) -> None:
        super().__init__(db, SCHEMA)
        self.extractor = extractor
        self.validator = validator or EntityValidator()
        self.fuzzy_cutoff = fuzzy_cutoff
        self._names: dict[str, list[str]] | None = None
        self._names_lock = threading.Lock()

    def search(self, query: str, filters: SearchFilters | None, top_k: int) -> list[StoreHit]:
        seeds = self.resolve(query)
        if not seeds:
            return []
        scores: dict[str, float] = defaultdict(float)
        owners: dict[str, str] = {}
        self._score_mentions(seeds, filters, scores, owners)
        neighbors = self._neighbors(seeds)
        if neighbors:
            self._score_mentions(neighbors, filters, scores, owners)
        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))[:top_k]
        return [StoreHit(chunk_id=chunk_id, document_id=owners[chunk_id], score=score) for chunk_id, score in ranked]

    def resolve(self, query: str) -> dict[str, float]:
        """Map names found in ``query`` to entity ids with a match weight."""
        candidates: dict[str, float] = {}
        for entity in self.validator.validate(self.extractor.extract_entities(query)):
            candidates[normalize_name(entity.name)] = 1.0
        for gram in _ngrams(query):
            candidates.setdefault(gram, 1.0)
        if not candidates:
            return {}
        names = list(candidates)
        rows = self.db.query(f"SELECT id, norm_name FROM entities WHERE norm_name IN ({placeholders(names)})", names)
        seeds: dict[str, float] = {}
        matched = set()
        for row in rows:
            seeds[row["id"]] = max(seeds.get(row["id"], 0.0), candidates[row["norm_name"]])
            matched.add(row["norm_name"])
        index = None
        for name in names:
            if name in matched or len(name) < 4:
                continue
            index = index if index is not None else self._name_index()
            if not index:
                break
            for found, score, _ in process.extract(
                name,
                list(index),
                scorer=fuzz.ratio,
                score_cutoff=self.fuzzy_cutoff,
                limit=3,
            ):
                for ident in index[found]:
                    seeds[ident] = max(seeds.get(ident, 0.0), score / 100.0)
        return seeds

    def entity_count(self) -> int:
        row = self.db.query_one("SELECT COUNT(*) AS n FROM entities")
        return int(row["n"]) if row else 0

    def entities_for_chunk(self, chunk_id: str) -> list[dict[str, str]]:
        rows = self.db.query(
            """
            SELECT e.id, e.name, e.type FROM mentions m JOIN entities e ON e.id = m.entity_id
            WHERE m.chunk_id = ? ORDER BY e.norm_name
            """,
            [chunk_id],
        )
        return [{"id": row["id"], "name": row["name"], "type": row["type"]} for row in rows]

    # Internal helpers -------------------------------------------------

    def _score_mentions(
        self,
        weights: dict[str, float],
        filters: SearchFilters | None,
        scores: dict[str, float],
        owners: dict[str, str],
    ) -> None:
        ids = list(weights)
        where, params = filter_clause(filters, "c")
        rows = self.db.query(
            f"""
            SELECT m.entity_id, m.chunk_id, m.confidence, c.document_id
            FROM mentions m JOIN graph_chunks c ON c.chunk_id = m.chunk_id
            WHERE m.entity_id IN ({placeholders(ids)}){where}
            """,
            [*ids, *params],
        )
        for row in rows:
            scores[row["chunk_id"]] += weights[row["entity_id"]] * float(row["confidence"])
            owners[row["chunk_id"]] = row["document_id"]

    def _neighbors(self, seeds: dict[str, float]) -> dict[str, float]:
        ids = list(seeds)
        marks = placeholders(ids)
        rows = self.db.query(
            f"""
            SELECT source_entity, target_entity, confidence FROM relations
            WHERE source_entity IN ({marks}) OR target_entity IN ({marks})
            """,
            [*ids, *ids],
        )
        neighbors: dict[str, float] = {}
        for row in rows:
            for origin, other in ((row["source_entity"], row["target_entity"]), (row["target_entity"], row["source_entity"])):
                if origin not in seeds or other in seeds:
                    continue
                weight = seeds[origin] * NEIGHBOR_DECAY * float(row["confidence"])
                neighbors[other] = max(neighbors.get(other, 0.0), weight)
        return neighbors

    def _name_index(self) -> dict[str, list[str]]:
        with self._names_lock:
            if self._names is None:
                index: dict[str, list[str]] = defaultdict(list)
                for row in self.db.query("SELECT id, norm_name FROM entities"):
                    index[row["norm_name"]].append(row["id"])
                self._names = dict(index)
            return self._names

    def _add(self, document: IndexedDocument, chunks: Sequence[Chunk]) -> None:
        extracted: list[tuple[Chunk, list[ExtractedEntity]]] = []
        for chunk in chunks:
            entities = self.validator.validate(self.extractor.extract_entities(chunk.text))
            extracted.append((chunk, entities))
        nodes: dict[str, tuple[str, str, str, str]] = {}
        mentions: list[tuple[str, str, float]] = []
        relations: list[tuple[str, str, str, str, float]] = []
        for chunk, entities in extracted:
            local = {normalize_name(entity.name): entity_id(entity.name, entity.type) for entity in entities}
            for entity in entities:
                ident = entity_id(entity.name, entity.type)
                nodes[ident] = (ident, entity.name, normalize_name(entity.name), entity.type)
                mentions.append((ident, chunk.id, entity.confidence))
                for relation in entity.relations:
                    target = local.get(normalize_name(relation.target))
                    if target is None:
                        target = entity_id(relation.target, "concept")
                        nodes.setdefault(target, (target, relation.target, normalize_name(relation.target), "concept"))
                    if target == ident:
                        continue
                    relations.append((ident, target, relation.type, chunk.id, relation.confidence))
        with self.db.transaction() as cursor:
            self._register_chunks(cursor, document, chunks)
            cursor.executemany(
                "INSERT OR IGNORE INTO entities (id, name, norm_name, type) VALUES (?, ?, ?, ?)",
                list(nodes.values()),
            )
            cursor.executemany(
                "INSERT OR REPLACE INTO mentions (entity_id, chunk_id, confidence) VALUES (?, ?, ?)",
                mentions,
            )
            cursor.executemany(
                """
                INSERT OR REPLACE INTO relations (source_entity, target_entity, type, chunk_id, confidence)
                VALUES (?, ?, ?, ?, ?)
                """,
                relations,
            )
        self._invalidate()

    def _remove(self, chunk_ids: Sequence[str]) -> None:
        params = [(chunk_id,) for chunk_id in chunk_ids]
        with self.db.transaction() as cursor:
            cursor.executemany("DELETE FROM mentions WHERE chunk_id = ?", params)
            cursor.executemany("DELETE FROM relations WHERE chunk_id = ?", params)
            self._unregister_chunks(cursor, chunk_ids)
            cursor.execute(
                """
                DELETE FROM entities WHERE
                  id NOT IN (SELECT entity_id FROM mentions)
                  AND id NOT IN (SELECT source_entity FROM relations)
                  AND id NOT IN (SELECT target_entity FROM relations)
                """
            )
        self._invalidate()

    def _invalidate(self) -> None:
        with self._names_lock:
            self._names = None


def _ngrams(query: str) -> list[str]:
    tokens = words(query)
    grams: list[str] = []
    for size in range(1, _MAX_NGRAM + 1):
        for idx in range(len(tokens) - size + 1):
            window = tokens[idx : idx + size]
            if all(token in STOP_WORDS for token in window) or len(window[0]) < 2:
                continue
            grams.append(" ".join(window))
    return grams


__all__ = ["GraphStore", "NEIGHBOR_DECAY"]
