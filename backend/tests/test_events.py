"""Tests for the sync event bus."""

from conduit_kb.core.events import SYNC_COMPLETED, SYNC_PROGRESS, SYNC_STARTED, EventBus


def test_subscribers_receive_events_in_order() -> None:
    bus = EventBus()
    subscription = bus.subscribe()
    bus.publish(SYNC_STARTED, source_id="src_1", root="/docs")
    bus.publish(SYNC_COMPLETED, source_id="src_1")
    first = subscription.queue.get_nowait()
    second = subscription.queue.get_nowait()
    assert (first.type, second.type) == (SYNC_STARTED, SYNC_COMPLETED)
    assert first.id < second.id
    assert first.to_dict()["payload"] == {"root": "/docs"}


def test_slow_subscriber_drops_without_blocking() -> None:
    bus = EventBus()
    subscription = bus.subscribe(buffer=2)
    for processed in range(5):
        bus.publish(SYNC_PROGRESS, source_id="src_1", processed=processed, total=5)
    assert subscription.queue.qsize() == 2
    assert subscription.dropped == 3


def test_type_filter_and_unsubscribe() -> None:
    bus = EventBus()
    subscription = bus.subscribe(types={SYNC_COMPLETED})
    bus.publish(SYNC_STARTED, source_id="src_1")
    bus.publish(SYNC_COMPLETED, source_id="src_1")
    assert subscription.queue.qsize() == 1
    bus.unsubscribe(subscription.id)
    assert bus.subscriber_count == 0


def test_failing_listener_does_not_reach_publisher() -> None:
    bus = EventBus()
    seen: list[str] = []

    def broken(event) -> None:
        raise RuntimeError("listener bug")

    bus.add_listener(broken)
    bus.add_listener(lambda event: seen.append(event.type))
    event = bus.publish(SYNC_STARTED, source_id="src_1")
    assert event.type == SYNC_STARTED
    assert seen == [SYNC_STARTED]
    bus.remove_listener(broken)
