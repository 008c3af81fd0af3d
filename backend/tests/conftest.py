"""Test fixtures for conduit-kb."""

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Iterator

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conduit_kb.core.config import Settings, get_settings  # noqa: E402
from conduit_kb.core.errors import EmbeddingUnavailable  # noqa: E402
from conduit_kb.engine import KnowledgeBase, get_knowledge_base  # noqa: E402
from conduit_kb.ingest.embeddings import HashingEmbedder  # noqa: E402

VOCABULARY = (
    "fox", "dog", "quick", "brown", "lazy", "sleeps", "jumps", "cat", "engine", "vector",
    "search", "index", "sync", "graph", "token", "chunk", "python", "config", "storage", "query",
)
_WORD_RE = re.compile(r"\w+")


class VocabularyEmbedder:
    """Counts occurrences of a fixed vocabulary; words outside it are ignored."""

    name = "vocab"

    def __init__(self, vocabulary: tuple[str, ...] = VOCABULARY) -> None:
        self.vocabulary = {word: idx for idx, word in enumerate(vocabulary)}

    @property
    def dim(self) -> int:
        return len(self.vocabulary)

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        for word in _WORD_RE.findall(text.lower()):
            idx = self.vocabulary.get(word)
            if idx is not None:
                vector[idx] += 1.0
        return vector


class BrokenEmbedder:
    name = "broken"
    dim = 4

    def embed(self, text: str) -> list[float]:
        raise EmbeddingUnavailable("embedding model offline")


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("CKB_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("CKB_CONFIG", str(tmp_path / "missing-config.yaml"))
    monkeypatch.setenv("CKB_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("CKB_LOG_JSON", "false")
    HashingEmbedder._instances.clear()
    get_settings.cache_clear()
    get_knowledge_base.cache_clear()
    yield
    HashingEmbedder._instances.clear()
    get_settings.cache_clear()
    get_knowledge_base.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        sync_workers=2,
        writer_retries=2,
        log_json=False,
        rerank_enabled=False,
    )


@pytest.fixture
def kb(settings: Settings) -> Iterator[KnowledgeBase]:
    knowledge_base = KnowledgeBase(settings, embedder=VocabularyEmbedder())
    yield knowledge_base
    knowledge_base.close()


@pytest.fixture
def docs_dir(tmp_path: Path) -> Path:
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "a.md").write_text("The quick brown fox", encoding="utf-8")
    (docs / "b.md").write_text("A lazy dog sleeps", encoding="utf-8")
    return docs


@pytest.fixture(scope="session")
def sample_text() -> str:
    return "Title\n\nParagraph one.\n\nParagraph two is here."
