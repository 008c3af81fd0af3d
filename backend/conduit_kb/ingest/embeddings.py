"""Embedding backends."""

from __future__ import annotations

import hashlib
import math
import re
import threading
from array import array
from typing import Protocol, Sequence, runtime_checkable

from conduit_kb.core.config import Settings
from conduit_kb.core.errors import EmbeddingUnavailable
from conduit_kb.core.logging import get_logger

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"\w+")


@runtime_checkable
class Embedder(Protocol):
    """Anything that maps text to a fixed-dimension vector.

    Implementations raise ``EmbeddingUnavailable`` when they cannot serve a
    request; the engine then treats the vector signal as absent.
    """

    name: str

    @property
    def dim(self) -> int: ...

    def embed(self, text: str) -> list[float]: ...


class HashingEmbedder:
    """Lightweight hashed bag-of-words embedding with deterministic output."""

    _instances: dict[tuple[str, int], "HashingEmbedder"] = {}

    def __init__(self, name: str = "hashed", dim: int = 384) -> None:
        self.name = name
        self._dim = dim

    @classmethod
    def get(cls, name: str = "hashed", dim: int = 384) -> "HashingEmbedder":
        key = (name or "hashed", dim)
        if key not in cls._instances:
            cls._instances[key] = HashingEmbedder(name=key[0], dim=dim)
        return cls._instances[key]

    @property
    def dim(self) -> int:
        return self._dim

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self._dim
        for token in _tokenize(text):
            vector[_hash_token(token, self._dim)] += 1.0
        _normalize(vector)
        return vector


class SentenceTransformerEmbedder:
    """Dense embeddings from a sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str, device: str | None = None) -> None:
        self.name = model_name
        self.device = device
        self._model = None
        self._dim: int | None = None
        self._lock = threading.Lock()

    @property
    def dim(self) -> int:
        if self._dim is None:
            self._load()
        return self._dim or 0

    def embed(self, text: str) -> list[float]:
        model = self._load()
        try:
            vector = model.encode([text], normalize_embeddings=True, convert_to_numpy=True)[0]
        except Exception as exc:
            raise EmbeddingUnavailable(f"embedding model '{self.name}' failed: {exc}") from exc
        return [float(value) for value in vector]

    def _load(self):
        with self._lock:
            if self._model is not None:
                return self._model
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as exc:
                raise EmbeddingUnavailable("sentence-transformers is not installed") from exc
            try:
                self._model = SentenceTransformer(self.name, device=self.device)
            except Exception as exc:
                raise EmbeddingUnavailable(f"cannot load embedding model '{self.name}': {exc}") from exc
            self._dim = int(self._model.get_sentence_embedding_dimension())
            logger.info("Loaded embedding model", extra={"ctx_model": self.name, "ctx_dim": self._dim})
            return self._model


def build_embedder(settings: Settings) -> Embedder:
    if settings.embedding_backend == "sentence-transformers":
        return SentenceTransformerEmbedder(settings.embedding_model)
    return HashingEmbedder.get(settings.embedding_model, dim=settings.embedding_dim)


def as_bytes(vector: Sequence[float]) -> bytes:
    return array("f", vector).tobytes()


def from_bytes(payload: bytes) -> list[float]:
    floats = array("f")
    floats.frombytes(payload)
    return list(floats)


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _hash_token(token: str, dim: int) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    return value % dim


def _normalize(vector: list[float]) -> None:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return
    inv = 1.0 / norm
    for idx, value in enumerate(vector):
        vector[idx] = value * inv


__all__ = [
    "Embedder",
    "HashingEmbedder",
    "SentenceTransformerEmbedder",
    "build_embedder",
    "as_bytes",
    "from_bytes",
]
