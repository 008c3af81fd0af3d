"""Text processing helpers."""

from __future__ import annotations

import re

WORD_RE = re.compile(r"\w+")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

STOP_WORDS = frozenset(
    """
    a an and are as at be but by for from has have how i if in into is it its of on or
    that the their then there these this to was were what when where which who why will
    with you your do does did can could should would about
    """.split()
)


def words(text: str) -> list[str]:
    """Lowercased word tokens, stop-words included."""
    return WORD_RE.findall(text.lower())


def index_terms(text: str) -> list[str]:
    """Terms for the inverted index.

    Every word is kept lowercased; identifiers written in ``snake_case`` or
    ``camelCase`` additionally contribute their parts. Stop-words are dropped.
    """
    terms: list[str] = []
    for match in WORD_RE.finditer(text):
        raw = match.group()
        lowered = raw.lower()
        if lowered not in STOP_WORDS:
            terms.append(lowered)
        parts = _identifier_parts(raw)
        if len(parts) > 1:
            terms.extend(part for part in parts if part not in STOP_WORDS and len(part) > 1)
    return terms


def snippet(text: str, terms: list[str], context: int = 150) -> str:
    """Cut ``text`` around the first occurrence of any term."""
    if len(text) <= context * 2:
        return text.strip()
    lowered = text.lower()
    positions = [lowered.find(term) for term in terms if term]
    positions = [pos for pos in positions if pos >= 0]
    if not positions:
        return text[: context * 2].rstrip() + "…"
    center = min(positions)
    start = max(0, center - context)
    end = min(len(text), center + context)
    prefix = "…" if start > 0 else ""
    suffix = "…" if end < len(text) else ""
    return f"{prefix}{text[start:end].strip()}{suffix}"


def _identifier_parts(token: str) -> list[str]:
    parts: list[str] = []
    for piece in token.split("_"):
        if not piece:
            continue
        parts.extend(match.group().lower() for match in _CAMEL_RE.finditer(piece))
    return parts
