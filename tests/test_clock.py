"""Tests for pipewatch.clock."""

from __future__ import annotations

from datetime import timedelta

import pytest

from pipewatch.clock import ManualClock, PeriodicTask
from pipewatch.exceptions import ValidationError


class TestManualClock:
    def test_advance_fires_due_timers_in_order(self, clock):
        fired = []
        clock.call_later(10, lambda: fired.append("b"))
        clock.call_later(5, lambda: fired.append("a"))
        clock.call_later(30, lambda: fired.append("c"))

        clock.advance(10)

        assert fired == ["a", "b"]
        assert clock.pending() == 1

    def test_callback_sees_its_due_time(self, clock):
        start = clock.now()
        seen = []
        clock.call_later(5, lambda: seen.append(clock.now()))
        clock.advance(60)
        assert seen == [start + timedelta(seconds=5)]
        assert clock.now() == start + timedelta(seconds=60)

    def test_cancelled_timer_never_fires(self, clock):
        fired = []
        handle = clock.call_later(1, lambda: fired.append(1))
        handle.cancel()
        clock.advance(5)
        assert fired == []
        assert handle.cancelled
        assert not handle.fired

    def test_callback_may_schedule_more_timers(self, clock):
        fired = []

        def first():
            fired.append("first")
            clock.call_later(1, lambda: fired.append("second"))

        clock.call_later(1, first)
        clock.advance(3)
        assert fired == ["first", "second"]

    def test_failing_callback_does_not_stop_others(self, clock):
        fired = []

        def boom():
            raise RuntimeError("boom")

        clock.call_later(1, boom)
        clock.call_later(2, lambda: fired.append("ok"))
        clock.advance(2)
        assert fired == ["ok"]

    def test_cannot_go_backwards(self, clock):
        with pytest.raises(ValidationError):
            clock.advance(-1)

    def test_starts_at_fixed_utc_time(self):
        clock = ManualClock()
        assert clock.now().tzinfo is not None
        assert clock.now().year == 2024


class TestPeriodicTask:
    def test_runs_every_interval(self, clock):
        calls = []
        task = PeriodicTask("t", 10, lambda: calls.append(clock.now()), clock)
        task.start()
        clock.advance(35)
        assert len(calls) == 3
        assert task.run_count == 3

    def test_stop_cancels_pending_tick(self, clock):
        calls = []
        task = PeriodicTask("t", 10, lambda: calls.append(1), clock)
        task.start()
        task.stop()
        clock.advance(100)
        assert calls == []
        assert clock.pending() == 0
        assert not task.running

    def test_reschedule_does_not_leak_old_timer(self, clock):
        calls = []
        task = PeriodicTask("t", 10, lambda: calls.append(clock.now()), clock)
        task.start()
        task.reschedule(25)

        assert clock.pending() == 1
        clock.advance(24)
        assert calls == []
        clock.advance(1)
        assert len(calls) == 1
        assert task.interval == 25

    def test_failure_is_recorded_and_task_keeps_running(self, clock):
        def fail():
            raise ValueError("nope")

        task = PeriodicTask("t", 5, fail, clock)
        task.start()
        clock.advance(10)
        assert task.run_count == 2
        assert isinstance(task.last_error, ValueError)
        assert task.running

    def test_start_twice_schedules_once(self, clock):
        task = PeriodicTask("t", 5, lambda: None, clock)
        task.start()
        task.start()
        assert clock.pending() == 1

    @pytest.mark.parametrize("interval", [0, -1])
    def test_rejects_non_positive_interval(self, clock, interval):
        with pytest.raises(ValidationError):
            PeriodicTask("t", interval, lambda: None, clock)
