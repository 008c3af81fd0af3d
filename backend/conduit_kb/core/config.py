"""Application configuration handling."""

from __future__ import annotations

import math
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from conduit_kb.core.errors import ConfigurationError

ENV_PREFIX = "CKB_"
DEFAULT_CONFIG_PATH = Path("~/.config/conduit-kb/config.yaml")

QUERY_CLASSES = ("exact", "entity", "conceptual", "factual", "exploratory")

DEFAULT_STRATEGY_WEIGHTS: dict[str, tuple[float, float, float]] = {
    "exact": (0.8, 0.1, 0.1),
    "entity": (0.3, 0.2, 0.5),
    "conceptual": (0.2, 0.6, 0.2),
    "factual": (0.45, 0.35, 0.2),
    "exploratory": (0.3, 0.5, 0.2),
}

DEFAULT_INCLUDE = [
    "*.{md,markdown,mdx,txt,rst,adoc,org}",
    "*.{py,pyi,go,js,jsx,ts,tsx,java,kt,scala,rs,rb,c,h,cc,cpp,hpp,cs,swift,php,sh,sql}",
    "*.{json,yaml,yml,toml,ini,cfg,conf,xml}",
    "*.{csv,tsv}",
    "*.{pdf,docx,odt}",
]

DEFAULT_EXCLUDE = [
    "node_modules",
    ".git",
    ".svn",
    ".hg",
    "__pycache__",
    ".pytest_cache",
    ".venv",
    "vendor",
    "dist",
    "build",
    "target",
    ".DS_Store",
    "Thumbs.db",
]

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "data_dir"): "data_dir",
    ("chunking", "target_tokens"): "chunk_target_tokens",
    ("chunking", "overlap_fraction"): "chunk_overlap_fraction",
    ("chunking", "max_tokens"): "chunk_max_tokens",
    ("sync", "workers"): "sync_workers",
    ("sync", "max_file_bytes"): "max_file_bytes",
    ("sync", "writer_retries"): "writer_retries",
    ("sync", "include"): "default_include",
    ("sync", "exclude"): "default_exclude",
    ("sync", "allowed_roots"): "allowed_roots",
    ("embeddings", "backend"): "embedding_backend",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "dim"): "embedding_dim",
    ("retrieval", "top_k"): "store_top_k",
    ("retrieval", "limit"): "result_limit",
    ("retrieval", "rrf_k"): "rrf_k",
    ("retrieval", "mmr_enabled"): "mmr_enabled",
    ("retrieval", "mmr_lambda"): "mmr_lambda",
    ("retrieval", "mmr_top_n"): "mmr_top_n",
    ("retrieval", "same_document_similarity"): "same_document_similarity",
    ("retrieval", "store_timeout_ms"): "store_timeout_ms",
    ("retrieval", "vector_min_score"): "vector_min_score",
    ("retrieval", "fuzzy_cutoff"): "fuzzy_cutoff",
    ("retrieval", "capability_retry_seconds"): "capability_retry_seconds",
    ("rerank", "enabled"): "rerank_enabled",
    ("rerank", "backend"): "rerank_backend",
    ("rerank", "model"): "rerank_model",
    ("rerank", "top_n"): "rerank_top_n",
    ("rerank", "budget_ms"): "rerank_budget_ms",
    ("logging", "level"): "log_level",
    ("logging", "json"): "log_json",
}

# Mapping values that are settings in their own right rather than nested sections.
_MAPPING_FIELDS = {"strategy_weights"}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    data_dir: Path = Field(default=Path.home() / ".conduit-kb")

    chunk_target_tokens: int = Field(default=512, ge=16)
    chunk_overlap_fraction: float = Field(default=0.1, ge=0.0, lt=1.0)
    chunk_max_tokens: int | None = None

    sync_workers: int = Field(default=4, ge=1)
    max_file_bytes: int = 50 * 1024 * 1024
    writer_retries: int = Field(default=3, ge=1)
    default_include: list[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE))
    default_exclude: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE))
    allowed_roots: list[Path] = Field(default_factory=list)

    embedding_backend: Literal["hashed", "sentence-transformers"] = "hashed"
    embedding_model: str = "hashed-384"
    embedding_dim: int = 384

    store_top_k: int = Field(default=50, ge=1)
    result_limit: int = Field(default=10, ge=1)
    rrf_k: int = Field(default=60, ge=1)
    mmr_enabled: bool = True
    mmr_lambda: float = Field(default=0.7, ge=0.0, le=1.0)
    mmr_top_n: int = Field(default=30, ge=1)
    same_document_similarity: float = Field(default=0.3, ge=0.0, le=1.0)
    store_timeout_ms: int = Field(default=2000, ge=1)
    vector_min_score: float = 0.2
    fuzzy_cutoff: float = Field(default=85.0, ge=0.0, le=100.0)
    capability_retry_seconds: float = 60.0
    strategy_weights: dict[str, tuple[float, float, float]] = Field(
        default_factory=lambda: dict(DEFAULT_STRATEGY_WEIGHTS)
    )

    rerank_enabled: bool = False
    rerank_backend: Literal["fuzzy", "cross-encoder"] = "fuzzy"
    rerank_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    rerank_top_n: int = Field(default=10, ge=1)
    rerank_budget_ms: int = Field(default=1500, ge=1)

    log_level: str = "INFO"
    log_json: bool = True

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("data_dir", mode="before")
    @classmethod
    def _expand_data_dir(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("data_dir must be a path or string")

    @field_validator("allowed_roots", mode="before")
    @classmethod
    def _expand_roots(cls, value: Any) -> list[Path]:
        if isinstance(value, str):
            value = [part for part in value.split(os.pathsep) if part]
        return [Path(item).expanduser() for item in value or []]

    @field_validator("default_include", "default_exclude", mode="before")
    @classmethod
    def _split_patterns(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(";") if part.strip()]
        return value

    @field_validator("strategy_weights")
    @classmethod
    def _check_weights(cls, value: dict[str, tuple[float, float, float]]) -> dict[str, tuple[float, float, float]]:
        merged = dict(DEFAULT_STRATEGY_WEIGHTS)
        for query_class, row in value.items():
            if query_class not in QUERY_CLASSES:
                raise ValueError(f"unknown query class '{query_class}'")
            if any(weight < 0 for weight in row):
                raise ValueError(f"negative weight for '{query_class}'")
            if not math.isclose(sum(row), 1.0, abs_tol=1e-6):
                raise ValueError(f"weights for '{query_class}' must sum to 1.0")
            merged[query_class] = tuple(float(weight) for weight in row)
        return merged

    @model_validator(mode="after")
    def _check_chunk_budget(self) -> "Settings":
        if self.chunk_max_tokens is not None and self.chunk_max_tokens < self.chunk_target_tokens:
            raise ValueError("chunk_max_tokens must be >= chunk_target_tokens")
        return self

    @property
    def effective_max_tokens(self) -> int:
        return self.chunk_max_tokens or self.chunk_target_tokens * 2

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                try:
                    raw = yaml.safe_load(fh) or {}
                except yaml.YAMLError as exc:
                    raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
            if not isinstance(raw, Mapping):
                raise ConfigurationError(f"{config_path} must contain a mapping of settings")
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping) and key not in _MAPPING_FIELDS:
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with CKB_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields and field_name not in _MAPPING_FIELDS:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor."""
    return Settings.from_yaml()


__all__ = [
    "Settings",
    "get_settings",
    "DEFAULT_STRATEGY_WEIGHTS",
    "DEFAULT_INCLUDE",
    "DEFAULT_EXCLUDE",
    "QUERY_CLASSES",
]
