"""Index stores and the writers that keep them in sync."""

from .base import IndexStore, KeyedLocks, StoreHit
from .graph import GraphStore
from .lexical import LexicalStore
from .vector import VectorStore
from .writers import IndexWriters, WriteOutcome

__all__ = [
    "IndexStore",
    "KeyedLocks",
    "StoreHit",
    "LexicalStore",
    "VectorStore",
    "GraphStore",
    "IndexWriters",
    "WriteOutcome",
]
