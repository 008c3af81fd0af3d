"""Authorization hook consulted before a source is registered."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence, runtime_checkable


@dataclass(slots=True)
class AuthorizationDecision:
    allowed: bool
    readonly_paths: list[Path] = field(default_factory=list)
    reason: str | None = None


@runtime_checkable
class Authorizer(Protocol):
    def authorize(self, path: Path) -> AuthorizationDecision: ...


class AllowListPolicy:
    """Allow paths under configured roots; an empty allow-list allows everything.

    The decision's ``readonly_paths`` is the requested path itself, so a
    source can never read outside the root it was registered with.
    """

    def __init__(self, roots: Sequence[Path] = (), denied: Sequence[Path] = ()) -> None:
        self.roots = [Path(root).expanduser().resolve() for root in roots]
        self.denied = [Path(path).expanduser().resolve() for path in denied]

    def authorize(self, path: Path) -> AuthorizationDecision:
        resolved = Path(path).expanduser().resolve()
        for denied in self.denied:
            if is_within(resolved, denied):
                return AuthorizationDecision(allowed=False, reason=f"{resolved} is under denied path {denied}")
        if self.roots and not any(is_within(resolved, root) for root in self.roots):
            return AuthorizationDecision(allowed=False, reason=f"{resolved} is outside the allowed roots")
        return AuthorizationDecision(allowed=True, readonly_paths=[resolved])


def is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


__all__ = ["AuthorizationDecision", "Authorizer", "AllowListPolicy", "is_within"]
