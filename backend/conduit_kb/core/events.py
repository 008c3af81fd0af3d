"""In-process event bus for sync lifecycle notifications."""

from __future__ import annotations

import itertools
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from conduit_kb.core.logging import get_logger
from conduit_kb.utils.time import utc_now

logger = get_logger(__name__)

SYNC_STARTED = "sync_started"
SYNC_PROGRESS = "sync_progress"
SYNC_COMPLETED = "sync_completed"
SYNC_FAILED = "sync_failed"
SOURCE_REGISTERED = "source_registered"
SOURCE_REMOVED = "source_removed"

DEFAULT_BUFFER = 100

EventListener = Callable[["Event"], None]


@dataclass(slots=True)
class Event:
    id: int
    type: str
    source_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source_id": self.source_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }


@dataclass(slots=True)
class Subscription:
    id: int
    queue: "queue.Queue[Event]"
    types: frozenset[str] | None = None
    dropped: int = 0

    def accepts(self, event_type: str) -> bool:
        return self.types is None or event_type in self.types


class EventBus:
    """Fan events out to bounded subscriber queues and listener callbacks.

    Publishing never blocks: when a subscriber queue is full the event is
    dropped for that subscriber and counted in ``Subscription.dropped``.
    Listener exceptions are logged and do not reach the publisher.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event_ids = itertools.count(1)
        self._subscription_ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}
        self._listeners: list[EventListener] = []

    def subscribe(self, buffer: int = DEFAULT_BUFFER, types: set[str] | None = None) -> Subscription:
        subscription = Subscription(
            id=next(self._subscription_ids),
            queue=queue.Queue(maxsize=max(1, buffer)),
            types=frozenset(types) if types else None,
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription_id: int) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)

    def add_listener(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event_type: str, source_id: str | None = None, **payload: Any) -> Event:
        with self._lock:
            event = Event(id=next(self._event_ids), type=event_type, source_id=source_id, payload=payload)
            subscriptions = list(self._subscriptions.values())
            listeners = list(self._listeners)
        for subscription in subscriptions:
            if not subscription.accepts(event_type):
                continue
            try:
                subscription.queue.put_nowait(event)
            except queue.Full:
                subscription.dropped += 1
                logger.debug(
                    "Dropping event for slow subscriber",
                    extra={"ctx_subscription": subscription.id, "ctx_event": event_type},
                )
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed", extra={"ctx_event": event_type})
        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


__all__ = [
    "Event",
    "EventBus",
    "EventListener",
    "Subscription",
    "SYNC_STARTED",
    "SYNC_PROGRESS",
    "SYNC_COMPLETED",
    "SYNC_FAILED",
    "SOURCE_REGISTERED",
    "SOURCE_REMOVED",
]
