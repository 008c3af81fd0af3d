"""Entity extraction backends and validation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from itertools import combinations
from typing import Iterable, Protocol, Sequence, runtime_checkable

from conduit_kb.core.logging import get_logger
from conduit_kb.ingest.types import ExtractedEntity, ExtractedRelation
from conduit_kb.utils.ids import stable_id

logger = get_logger(__name__)

ENTITY_TYPES = frozenset(
    {"concept", "organization", "person", "section", "document", "technology", "location", "event"}
)
RELATION_TYPES = frozenset(
    {
        "mentions",
        "defines",
        "relates_to",
        "contains",
        "part_of",
        "implements",
        "depends_on",
        "created_by",
        "used_by",
        "similar_to",
    }
)

_PROPER_RE = re.compile(r"\b[A-Z][a-zA-Z0-9]+(?:[ \t]+(?:of[ \t]+|the[ \t]+|de[ \t]+)?[A-Z][a-zA-Z0-9]+)*")
_CAMEL_RE = re.compile(r"\b[A-Z]?[a-z0-9]+(?:[A-Z][a-z0-9]+)+\b|\b[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]+)+\b")
_SNAKE_RE = re.compile(r"\b[a-zA-Z][a-zA-Z0-9]*(?:_[a-zA-Z0-9]+)+\b")
_SENTENCE_START_RE = re.compile(r"(?:^|[.!?]\s+|\n\s*[-*#>]*\s*)$")
_WHITESPACE_RE = re.compile(r"\s+")
_EDGE_PUNCT = "\"'`.,;:!?()[]{}<>"

_SUSPICIOUS_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"ignore\s+(?:all\s+)?(?:previous|prior|above)\s+instructions",
        r"system\s+prompt",
        r"<\s*/?\s*script",
        r"\{\{.*\}\}",
        r"\b(?:drop|delete)\s+table\b",
        r"javascript:",
    )
)

_COMMON_CAPITALIZED = frozenset(
    """
    The A An This That These Those It Its If In On At For From To By With Without But And Or Not No Yes
    When Where What Why How Who Which While After Before Then There Here Also However Therefore Thus
    Each Every Some Any All Many Most More Less Other Another Such Note Example See Use Using
    I We You He She They Our Your Their My Is Are Was Were Be Been Do Does Did Can Could Should Would
    Will May Might Must Let First Second Third Finally Returns Return Args Raises Parameters TODO
    Monday Tuesday Wednesday Thursday Friday Saturday Sunday
    """.split()
)

_TECH_HINTS = frozenset(
    """
    python go golang rust java javascript typescript kotlin scala ruby php swift sql sqlite postgres
    postgresql mysql redis kafka docker kubernetes linux macos windows react vue angular django flask
    fastapi pydantic numpy pandas pytorch tensorflow aws gcp azure git github http https json yaml
    toml graphql grpc api cli bm25 rrf mmr
    """.split()
)


@runtime_checkable
class EntityExtractor(Protocol):
    """Anything that pulls typed entities and relations out of text.

    Implementations raise ``ExtractionUnavailable`` when they cannot run;
    the engine then treats the graph signal as absent.
    """

    name: str

    def extract_entities(self, text: str) -> list[ExtractedEntity]: ...


class HeuristicEntityExtractor:
    """Pattern-based extraction of proper nouns and code identifiers.

    Multi-word capitalised phrases and capitalised words that appear away
    from a sentence start become entities; ``CamelCase`` and ``snake_case``
    identifiers become ``technology`` entities. Entities found in the same
    text are linked with ``relates_to`` edges.
    """

    name = "heuristic"

    def __init__(self, max_relations: int = 12) -> None:
        self.max_relations = max_relations

    def extract_entities(self, text: str) -> list[ExtractedEntity]:
        found: dict[str, ExtractedEntity] = {}
        for name, entity_type, confidence in self._candidates(text):
            key = normalize_name(name)
            if not key:
                continue
            existing = found.get(key)
            if existing is None or existing.confidence < confidence:
                found[key] = ExtractedEntity(type=entity_type, name=name, confidence=confidence)
        entities = list(found.values())
        pairs = 0
        for left, right in combinations(entities, 2):
            if pairs >= self.max_relations:
                break
            left.relations.append(
                ExtractedRelation(type="relates_to", target=right.name, confidence=min(left.confidence, right.confidence))
            )
            pairs += 1
        return entities

    def _candidates(self, text: str) -> Iterable[tuple[str, str, float]]:
        for match in _CAMEL_RE.finditer(text):
            yield match.group(), "technology", 0.7
        for match in _SNAKE_RE.finditer(text):
            yield match.group(), "technology", 0.7
        for match in _PROPER_RE.finditer(text):
            phrase = match.group().strip()
            words = phrase.split()
            if words and words[0] in _COMMON_CAPITALIZED:
                words = words[1:]
                if not words:
                    continue
                phrase = " ".join(words)
            if len(words) > 1:
                yield phrase, _guess_type(phrase), 0.8
                continue
            word = words[0]
            if word in _COMMON_CAPITALIZED or len(word) < 3:
                continue
            at_sentence_start = bool(_SENTENCE_START_RE.search(text[: match.start()]))
            if word.lower() in _TECH_HINTS:
                yield word, "technology", 0.7
            elif not at_sentence_start:
                yield word, _guess_type(word), 0.6


@dataclass(slots=True)
class EntityValidator:
    """Filter and normalise extractor output before it reaches the graph."""

    min_confidence: float = 0.5
    min_name_length: int = 2
    max_name_length: int = 100

    def validate(self, entities: Sequence[ExtractedEntity]) -> list[ExtractedEntity]:
        accepted: dict[str, ExtractedEntity] = {}
        for entity in entities:
            name = clean_name(entity.name)
            if not self._acceptable(name, entity.confidence):
                continue
            entity_type = entity.type.lower() if entity.type and entity.type.lower() in ENTITY_TYPES else "concept"
            relations = []
            for relation in entity.relations:
                target = clean_name(relation.target)
                if not self._acceptable(target, relation.confidence):
                    continue
                relation_type = relation.type.lower() if relation.type.lower() in RELATION_TYPES else "relates_to"
                relations.append(ExtractedRelation(type=relation_type, target=target, confidence=relation.confidence))
            key = f"{entity_type}:{normalize_name(name)}"
            existing = accepted.get(key)
            if existing is not None:
                existing.relations.extend(relations)
                existing.confidence = max(existing.confidence, entity.confidence)
                continue
            accepted[key] = ExtractedEntity(
                type=entity_type,
                name=name,
                relations=relations,
                confidence=min(1.0, float(entity.confidence)),
            )
        return list(accepted.values())

    def _acceptable(self, name: str, confidence: float) -> bool:
        if confidence < self.min_confidence:
            return False
        if not self.min_name_length <= len(name) <= self.max_name_length:
            return False
        if any(pattern.search(name) for pattern in _SUSPICIOUS_PATTERNS):
            logger.warning("Rejected suspicious entity name", extra={"ctx_name": name[:80]})
            return False
        return any(char.isalnum() for char in name)


def clean_name(name: str) -> str:
    return _WHITESPACE_RE.sub(" ", name).strip().strip(_EDGE_PUNCT).strip()


def normalize_name(name: str) -> str:
    return clean_name(name).lower()


def entity_id(name: str, entity_type: str) -> str:
    return stable_id("ent", entity_type, normalize_name(name))


def _guess_type(phrase: str) -> str:
    lowered = phrase.lower()
    if any(word in _TECH_HINTS for word in lowered.split()):
        return "technology"
    if lowered.endswith((" inc", " corp", " ltd", " llc", " foundation", " university")):
        return "organization"
    return "concept"


__all__ = [
    "ENTITY_TYPES",
    "RELATION_TYPES",
    "EntityExtractor",
    "HeuristicEntityExtractor",
    "EntityValidator",
    "clean_name",
    "normalize_name",
    "entity_id",
]
