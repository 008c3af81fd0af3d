"""Tests for configuration loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from conduit_kb.core.config import DEFAULT_STRATEGY_WEIGHTS, Settings, get_settings
from conduit_kb.core.errors import ConfigurationError


def test_yaml_sections_map_to_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CKB_DATA_DIR")
    config = tmp_path / "config.yaml"
    config.write_text(
        "\n".join(
            [
                "storage:",
                f"  data_dir: {tmp_path / 'kb'}",
                "chunking:",
                "  target_tokens: 256",
                "sync:",
                "  workers: 8",
                "  exclude: [dist]",
                "retrieval:",
                "  rrf_k: 30",
                "strategy_weights:",
                "  exact: [0.6, 0.2, 0.2]",
            ]
        ),
        encoding="utf-8",
    )
    settings = Settings.from_yaml(config)
    assert settings.data_dir == tmp_path / "kb"
    assert settings.chunk_target_tokens == 256
    assert settings.effective_max_tokens == 512
    assert settings.sync_workers == 8
    assert settings.default_exclude == ["dist"]
    assert settings.rrf_k == 30
    assert settings.strategy_weights["exact"] == (0.6, 0.2, 0.2)
    assert settings.strategy_weights["entity"] == DEFAULT_STRATEGY_WEIGHTS["entity"]


def test_environment_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "config.yaml"
    config.write_text("sync:\n  workers: 8\n", encoding="utf-8")
    monkeypatch.setenv("CKB_SYNC_WORKERS", "3")
    monkeypatch.setenv("CKB_DEFAULT_INCLUDE", "*.md; *.txt")
    settings = Settings.from_yaml(config)
    assert settings.sync_workers == 3
    assert settings.default_include == ["*.md", "*.txt"]


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    settings = get_settings()
    assert settings.data_dir == tmp_path / "data"
    assert settings.chunk_target_tokens == 512
    assert settings.mmr_lambda == 0.7
    assert get_settings() is settings


def test_invalid_weights_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(data_dir=tmp_path, strategy_weights={"exact": (0.5, 0.1, 0.1)})
    with pytest.raises(ValidationError):
        Settings(data_dir=tmp_path, strategy_weights={"unknown": (1.0, 0.0, 0.0)})


def test_chunk_budget_must_cover_target(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(data_dir=tmp_path, chunk_target_tokens=512, chunk_max_tokens=100)
    assert Settings(data_dir=tmp_path, chunk_max_tokens=600).effective_max_tokens == 600


def test_malformed_yaml_raises_configuration_error(tmp_path: Path) -> None:
    config = tmp_path / "config.yaml"
    config.write_text("sync: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        Settings.from_yaml(config)
    config.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        Settings.from_yaml(config)
