"""Cooperative cancellation for long-running syncs and queries.

Workers poll :meth:`CancellationToken.is_cancelled` between units of work
instead of being interrupted, so a document whose store writes are in flight
always finishes and records its status before the sync stops.
"""

from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe flag checked by sync and search workers."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        with self._lock:
            self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the flag."""
        return self._event.wait(timeout)


__all__ = ["CancellationToken"]
