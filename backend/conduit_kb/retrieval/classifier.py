"""Rule-based query classification used to pick fusion weights."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from conduit_kb.utils.text import STOP_WORDS

_PHRASE_RE = re.compile(r'"([^"]+)"|\u201c([^\u201d]+)\u201d')
_IDENTIFIER_RES = (
    re.compile(r"\b[A-Za-z_][A-Za-z0-9]*_[A-Za-z0-9_]+\b"),
    re.compile(r"\b[a-z]+[A-Z][A-Za-z0-9]*\b"),
    re.compile(r"\b[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)+\b"),
    re.compile(r"\b[A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)+\(?\)?"),
    re.compile(r"\b[A-Za-z_][\w]*\(\)"),
    re.compile(r"\b[A-Za-z_][\w]*::[A-Za-z_][\w]*\b"),
)
_CONCEPTUAL_RE = re.compile(
    r"^\s*(why|how (?!many\b|much\b|long\b|old\b|often\b)|explain|describe|what (is|are|does|do)\b)"
    r"|\b(explain|difference between|compare|overview of|meaning of|purpose of|concept of)\b",
    re.IGNORECASE,
)
_FACTUAL_RE = re.compile(
    r"\d"
    r"|\b(how (many|much|long|old|often)|number of|when|which version|what version|percent(age)?"
    r"|average|total|count|maximum|minimum|max|min|rate|latency|size|limit|default)\b",
    re.IGNORECASE,
)
_PROPER_RE = re.compile(r"\b[A-Z][a-zA-Z0-9]+(?:\s+[A-Z][a-zA-Z0-9]+)*\b")
_ACRONYM_RE = re.compile(r"\b[A-Z]{2,}[0-9]*\b")
_QUESTION_WORDS = {"what", "why", "how", "when", "where", "who", "which", "explain", "describe", "is", "are", "does", "do", "can"}


@dataclass(slots=True)
class QueryAnalysis:
    text: str
    query_class: str
    phrases: list[str] = field(default_factory=list)
    identifiers: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "query_class": self.query_class,
            "phrases": list(self.phrases),
            "identifiers": list(self.identifiers),
            "entities": list(self.entities),
        }


def classify_query(text: str) -> QueryAnalysis:
    """Classify ``text`` as exact, conceptual, factual, entity or exploratory.

    The first matching rule wins: a quoted phrase or code identifier makes
    the query exact, question and explanation patterns make it conceptual,
    numbers and metric words make it factual, proper nouns make it an entity
    lookup, and anything else is exploratory.
    """
    phrases = [first or second for first, second in _PHRASE_RE.findall(text)]
    phrases = [phrase.strip() for phrase in phrases if phrase.strip()]
    unquoted = _PHRASE_RE.sub(" ", text)
    identifiers = _identifiers(unquoted)
    entities = _proper_nouns(unquoted, identifiers)

    if phrases or identifiers:
        query_class = "exact"
    elif _CONCEPTUAL_RE.search(unquoted):
        query_class = "conceptual"
    elif _FACTUAL_RE.search(unquoted):
        query_class = "factual"
    elif entities:
        query_class = "entity"
    else:
        query_class = "exploratory"
    return QueryAnalysis(
        text=text,
        query_class=query_class,
        phrases=phrases,
        identifiers=identifiers,
        entities=entities,
    )


def _identifiers(text: str) -> list[str]:
    found: list[str] = []
    for pattern in _IDENTIFIER_RES:
        for match in pattern.finditer(text):
            token = match.group(0)
            if token not in found:
                found.append(token)
    return found


def _proper_nouns(text: str, identifiers: list[str]) -> list[str]:
    entities: list[str] = []
    for match in _PROPER_RE.finditer(text):
        phrase = match.group(0)
        words = phrase.split()
        if match.start() == len(text) - len(text.lstrip()):
            if words[0].lower() in _QUESTION_WORDS or words[0].lower() in STOP_WORDS:
                words = words[1:]
            elif len(words) == 1:
                continue
        phrase = " ".join(words)
        if phrase and phrase not in identifiers and phrase not in entities:
            entities.append(phrase)
    for match in _ACRONYM_RE.finditer(text):
        if match.group(0) not in entities:
            entities.append(match.group(0))
    return entities


__all__ = ["QueryAnalysis", "classify_query"]
