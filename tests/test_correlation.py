"""Tests for pipewatch.correlation."""

from __future__ import annotations

from pipewatch.bus import DomainEventType
from pipewatch.config import CorrelationConfig
from pipewatch.correlation import CorrelationTracker


class TestCorrelationTracker:
    def test_new_correlation_ids_are_unique(self, tracker):
        ids = {tracker.new_correlation() for _ in range(200)}
        assert len(ids) == 200
        assert all(cid in tracker for cid in ids)

    def test_context_is_recorded_read_only(self, tracker, clock):
        cid = tracker.new_correlation({"job": "import"})
        ctx = tracker.get(cid)
        assert ctx.origin_context["job"] == "import"
        assert ctx.created_at == clock.now()

    def test_touch_adopts_unknown_upstream_id(self, tracker):
        tracker.touch("upstream-123")
        assert "upstream-123" in tracker
        assert tracker.get("upstream-123").origin_context["adopted"] is True

    def test_touch_updates_last_seen(self, tracker, clock):
        cid = tracker.new_correlation()
        clock.advance(30)
        tracker.touch(cid)
        assert tracker.last_seen(cid) == clock.now()

    def test_sweep_expires_idle_ids(self, clock, bus):
        tracker = CorrelationTracker(CorrelationConfig(idle_timeout=60), clock, bus)
        sub = bus.subscribe([DomainEventType.CORRELATION_EXPIRED])
        idle = tracker.new_correlation()
        clock.advance(50)
        fresh = tracker.new_correlation()
        clock.advance(20)

        assert tracker.sweep() == [idle]
        assert idle not in tracker
        assert fresh in tracker
        assert sub.get_nowait().payload["correlation_ids"] == [idle]

    def test_sweep_keeps_ids_with_open_spans(self, clock):
        tracker = CorrelationTracker(CorrelationConfig(idle_timeout=60), clock)
        busy = tracker.new_correlation()
        done = tracker.new_correlation()
        tracker.set_open_span_probe(lambda cid: cid == busy)
        clock.advance(120)

        assert tracker.sweep() == [done]
        assert busy in tracker

    def test_sweep_keeps_ids_touched_during_the_sweep(self, clock):
        tracker = CorrelationTracker(CorrelationConfig(idle_timeout=60), clock)
        revived = tracker.new_correlation()
        stale = tracker.new_correlation()
        clock.advance(120)

        def touch_while_checking(cid):
            if cid == revived:
                tracker.touch(revived)
            return False

        tracker.set_open_span_probe(touch_while_checking)

        assert tracker.sweep() == [stale]
        assert revived in tracker
        assert tracker.last_seen(revived) == clock.now()

    def test_stats(self, tracker, clock):
        tracker.new_correlation()
        clock.advance(10)
        tracker.new_correlation()
        stats = tracker.stats()
        assert stats["active"] == 2
        assert stats["total_created"] == 2
        assert stats["average_age_seconds"] == 5.0
