"""Tests for pipewatch.bus."""

from __future__ import annotations

from pipewatch.bus import DomainEventType, EventBus


class TestEventBus:
    def test_publish_reaches_matching_subscribers(self, bus):
        everything = bus.subscribe()
        alerts_only = bus.subscribe([DomainEventType.ALERT_CREATED])

        bus.publish(DomainEventType.LOGS_FLUSHED, count=3)
        bus.publish(DomainEventType.ALERT_CREATED, alert={"id": "a"})

        assert [e.type for e in everything.drain()] == [
            DomainEventType.LOGS_FLUSHED,
            DomainEventType.ALERT_CREATED,
        ]
        events = alerts_only.drain()
        assert len(events) == 1
        assert events[0].payload == {"alert": {"id": "a"}}

    def test_event_timestamp_comes_from_clock(self, clock):
        bus = EventBus(clock)
        event = bus.publish(DomainEventType.SPAN_STARTED)
        assert event.timestamp == clock.now()

    def test_full_subscription_drops_oldest(self, bus):
        sub = bus.subscribe(maxsize=2)
        for i in range(5):
            bus.publish(DomainEventType.LOGS_FLUSHED, count=i)

        assert [e.payload["count"] for e in sub.drain()] == [3, 4]
        assert sub.dropped == 3

    def test_unsubscribe_stops_delivery(self, bus):
        sub = bus.subscribe()
        bus.unsubscribe(sub)
        bus.publish(DomainEventType.LOGS_FLUSHED)
        assert sub.get_nowait() is None
        assert bus.subscriber_count == 0

    def test_get_with_timeout_returns_none_when_empty(self, bus):
        sub = bus.subscribe()
        assert sub.get(timeout=0.01) is None

    def test_clear_closes_everything(self, bus):
        subs = [bus.subscribe(), bus.subscribe()]
        bus.clear()
        assert all(s.closed for s in subs)
        assert bus.subscriber_count == 0
