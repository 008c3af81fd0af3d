"""Tests for glob handling and the path policy."""

from pathlib import Path

from conduit_kb.ingest.sources import expand_patterns, matches_any
from conduit_kb.security.policy import AllowListPolicy, Authorizer, is_within


def test_brace_patterns_expand() -> None:
    assert expand_patterns(["*.{md,txt}", " ", "docs/*.py"]) == ["*.md", "*.txt", "docs/*.py"]
    assert expand_patterns(["{a,b}/*.{x,y}"]) == ["a/*.x", "a/*.y", "b/*.x", "b/*.y"]


def test_patterns_match_name_or_relative_path() -> None:
    assert matches_any("guide/intro.md", "intro.md", ["*.md"])
    assert matches_any("guide/intro.md", "intro.md", ["guide/*"])
    assert matches_any("guide/deep/intro.md", "intro.md", ["**/intro.md"])
    assert not matches_any("guide/intro.md", "intro.md", ["*.txt"])


def test_allow_list_policy(tmp_path: Path) -> None:
    allowed = tmp_path / "allowed"
    secret = allowed / "secret"
    secret.mkdir(parents=True)
    policy = AllowListPolicy(roots=[allowed], denied=[secret])
    assert isinstance(policy, Authorizer)

    decision = policy.authorize(allowed / "notes")
    assert decision.allowed
    assert decision.readonly_paths == [(allowed / "notes").resolve()]

    denied = policy.authorize(secret / "keys")
    assert not denied.allowed
    assert "denied" in (denied.reason or "")

    outside = policy.authorize(tmp_path / "elsewhere")
    assert not outside.allowed


def test_empty_allow_list_allows_everything(tmp_path: Path) -> None:
    assert AllowListPolicy().authorize(tmp_path).allowed
    assert is_within(tmp_path / "a" / "b", tmp_path)
    assert not is_within(tmp_path, tmp_path / "a")
