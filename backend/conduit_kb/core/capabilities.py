"""Availability tracking for pluggable model capabilities."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from conduit_kb.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class CapabilityState:
    name: str
    available: bool = True
    reason: str | None = None
    since: float | None = None


class CapabilityTracker:
    """Remember which signals are degraded and when to try them again.

    A capability marked unavailable stays off for ``retry_seconds``; after
    that ``is_available`` lets one caller through to try it, and a success
    reported with ``mark_available`` restores it for everyone.
    """

    def __init__(self, retry_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.retry_seconds = retry_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, CapabilityState] = {}

    def is_available(self, name: str) -> bool:
        with self._lock:
            state = self._states.get(name)
            if state is None or state.available:
                return True
            if state.since is not None and self._clock() - state.since >= self.retry_seconds:
                state.since = self._clock()
                return True
            return False

    def mark_unavailable(self, name: str, reason: str) -> None:
        with self._lock:
            state = self._states.setdefault(name, CapabilityState(name=name))
            if state.available:
                logger.warning("Capability degraded", extra={"ctx_capability": name, "ctx_reason": reason})
            state.available = False
            state.reason = reason
            state.since = self._clock()

    def mark_available(self, name: str) -> None:
        with self._lock:
            state = self._states.get(name)
            if state is None or state.available:
                return
            logger.info("Capability recovered", extra={"ctx_capability": name})
            state.available = True
            state.reason = None
            state.since = None

    def degraded(self) -> list[str]:
        with self._lock:
            return sorted(name for name, state in self._states.items() if not state.available)

    def summary(self) -> dict[str, dict[str, object]]:
        with self._lock:
            return {
                name: {"available": state.available, "reason": state.reason}
                for name, state in sorted(self._states.items())
            }


__all__ = ["CapabilityTracker", "CapabilityState"]
