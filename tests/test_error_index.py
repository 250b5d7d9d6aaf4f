"""Tests for pipewatch.error_index."""

from __future__ import annotations

import pytest

from pipewatch.bus import DomainEventType
from pipewatch.config import ErrorTrackingConfig
from pipewatch.error_index import (
    ErrorCategory,
    ErrorFingerprintIndex,
    ErrorSeverity,
    ResolutionState,
    classify_category,
    classify_severity,
    compute_fingerprint,
)
from pipewatch.event_log import ErrorInfo
from pipewatch.exceptions import ValidationError


@pytest.fixture
def index(clock, event_log, bus):
    return ErrorFingerprintIndex(ErrorTrackingConfig(notification_frequency=3), clock, event_log, bus)


# =============================================================================
# HELPERS
# =============================================================================

def raise_in_parser():
    raise ValueError("bad row")


def raise_in_writer():
    raise ValueError("bad row")


def run(fn):
    fn()


def nested(fn, depth):
    if depth == 0:
        return fn()
    return nested(fn, depth - 1)


def import_job(fn):
    nested(fn, 4)


def export_job(fn):
    nested(fn, 4)


def track_raised(index, fn, *args):
    try:
        fn(*args)
    except ValueError as e:
        return index.track(e, emit=False)
    raise AssertionError("expected ValueError")


class TestClassification:
    def test_fingerprint_is_stable_and_short(self):
        first = compute_fingerprint("Timeout", "connect ETIMEDOUT", "at a\nat b")
        assert first == compute_fingerprint("Timeout", "connect ETIMEDOUT", "at a\nat b")
        assert len(first) == 16

    def test_fingerprint_ignores_frames_past_limit(self):
        base = "\n".join(f"frame {i}" for i in range(5))
        assert (compute_fingerprint("E", "m", base + "\nframe 99", frames=5)
                == compute_fingerprint("E", "m", base + "\nframe 42", frames=5))

    def test_raised_errors_split_by_raise_site(self, index):
        parser_id = track_raised(index, run, raise_in_parser)
        writer_id = track_raised(index, run, raise_in_writer)

        assert parser_id != writer_id
        assert index.get(parser_id).error.stack.splitlines()[1].endswith("in raise_in_parser")

    def test_raised_errors_merge_when_innermost_frames_match(self, index):
        first = track_raised(index, import_job, raise_in_parser)
        second = track_raised(index, export_job, raise_in_parser)

        assert first == second
        assert index.get(first).occurrence_count == 2

    @pytest.mark.parametrize("name,expected", [
        ("FatalError", ErrorSeverity.CRITICAL),
        ("TimeoutError", ErrorSeverity.HIGH),
        ("ValidationError", ErrorSeverity.MEDIUM),
        ("KeyError", ErrorSeverity.LOW),
    ])
    def test_severity_by_name(self, name, expected):
        assert classify_severity(name) is expected

    def test_category_by_message(self):
        assert classify_category("E", "Invalid payload") is ErrorCategory.VALIDATION
        assert classify_category("E", "database is locked") is ErrorCategory.DATABASE
        assert classify_category("E", "something odd") is ErrorCategory.UNKNOWN


class TestTracking:
    def test_same_fingerprint_is_deduplicated(self, index):
        error = ErrorInfo("Timeout", "connect ETIMEDOUT")
        first = index.track(error, {"correlation_id": "cid-a", "service": "api"})
        second = index.track(error, {"correlation_id": "cid-b", "user_id": 7})

        assert first == second
        record = index.get(first)
        assert record.occurrence_count == 2
        assert record.affected_correlation_ids == {"cid-a", "cid-b"}
        assert record.affected_users == {"7"}
        assert record.severity is ErrorSeverity.HIGH
        assert len(index) == 1

    def test_exceptions_and_tuples_are_accepted(self, index):
        try:
            raise ValueError("bad value")
        except ValueError as e:
            error_id = index.track(e)
        assert index.get(error_id).error.name == "ValueError"
        assert index.get(index.track(("Custom", "message"))).error.message == "message"

    def test_untrackable_input_rejected(self, index):
        with pytest.raises(ValidationError):
            index.track(42)

    def test_explicit_severity_wins(self, index):
        error_id = index.track(ErrorInfo("KeyError", "x"), severity="critical")
        assert index.get(error_id).severity is ErrorSeverity.CRITICAL

    def test_track_logs_an_error_event(self, index, event_log):
        index.track(ErrorInfo("Timeout", "slow"), {"correlation_id": "cid"})
        [event] = event_log.query(tags=["error-tracked"])
        assert event.correlation_id == "cid"
        assert event.error.name == "Timeout"

    def test_emit_false_skips_the_event(self, index, event_log):
        index.track(ErrorInfo("Timeout", "slow"), emit=False)
        assert event_log.query(tags=["error-tracked"]) == []

    def test_threshold_event_fires_once(self, index, bus):
        sub = bus.subscribe([DomainEventType.ERROR_THRESHOLD_EXCEEDED])
        for _ in range(5):
            index.track(ErrorInfo("Timeout", "slow"))
        events = sub.drain()
        assert len(events) == 1
        assert events[0].payload["occurrence_count"] == 3

    def test_low_severity_never_hits_threshold(self, index, bus):
        sub = bus.subscribe([DomainEventType.ERROR_THRESHOLD_EXCEEDED])
        for _ in range(5):
            index.track(ErrorInfo("KeyError", "missing"))
        assert sub.drain() == []

    def test_get_returns_a_copy(self, index):
        error_id = index.track(ErrorInfo("E", "m"), {"correlation_id": "cid"})
        index.get(error_id).affected_correlation_ids.add("tampered")
        assert index.get(error_id).affected_correlation_ids == {"cid"}


class TestResolution:
    def test_resolve_twice_reports_already_resolved(self, index, event_log):
        error_id = index.track(ErrorInfo("E", "m"))
        assert index.resolve(error_id, note="fixed", resolver="ops")

        outcome = index.resolve(error_id)

        assert not outcome
        assert outcome.reason == "already resolved"
        assert index.get(error_id).resolved_by == "ops"
        assert len(event_log.query(tags=["logic-error"])) == 1

    def test_resolve_unknown(self, index):
        assert index.resolve("missing").reason == "unknown error"

    def test_recurrence_after_resolve_opens_a_new_record(self, index):
        error = ErrorInfo("E", "m")
        old = index.track(error)
        index.resolve(old)
        new = index.track(error)
        assert new != old
        assert index.get(new).state is ResolutionState.OPEN
        assert index.get(new).occurrence_count == 1

    def test_set_state(self, index):
        error_id = index.track(ErrorInfo("E", "m"))
        assert index.set_state(error_id, "investigating")
        assert index.open_count() == 1
        index.set_state(error_id, "ignored")
        assert index.open_count() == 0
        with pytest.raises(ValidationError):
            index.set_state(error_id, "shelved")


class TestRetention:
    def test_sweep_evicts_by_last_occurrence_and_respects_hold(self, clock, event_log):
        index = ErrorFingerprintIndex(ErrorTrackingConfig(retention_days=1), clock, event_log)
        stale = index.track(ErrorInfo("Stale", "old"))
        held = index.track(ErrorInfo("Held", "old"))
        index.hold(held)
        clock.advance(86400 * 2)
        recent = index.track(ErrorInfo("Recent", "new"))

        assert index.sweep() == [stale]
        assert index.get(stale) is None
        assert index.get(held) is not None
        assert index.get(recent) is not None

    def test_evicted_fingerprint_starts_fresh(self, clock):
        index = ErrorFingerprintIndex(ErrorTrackingConfig(retention_days=1), clock)
        first = index.track(ErrorInfo("E", "m"))
        clock.advance(86400 * 2)
        index.sweep()
        second = index.track(ErrorInfo("E", "m"))
        assert second != first
        assert index.get(second).occurrence_count == 1

    def test_max_records_evicts_oldest(self, clock):
        index = ErrorFingerprintIndex(ErrorTrackingConfig(max_records=2), clock)
        oldest = index.track(ErrorInfo("A", "1"))
        clock.advance(1)
        index.track(ErrorInfo("B", "2"))
        clock.advance(1)
        index.track(ErrorInfo("C", "3"))
        assert index.sweep() == [oldest]
        assert len(index) == 2


class TestQueries:
    def test_search_filters_and_orders(self, index, clock):
        a = index.track(ErrorInfo("TimeoutError", "slow"), {"service": "api"})
        clock.advance(5)
        b = index.track(ErrorInfo("KeyError", "missing"), {"service": "worker"})

        assert [r.id for r in index.search()] == [b, a]
        assert [r.id for r in index.search(severity="high")] == [a]
        assert [r.id for r in index.search(service="worker")] == [b]
        assert [r.id for r in index.search(tags=["service:api"])] == [a]

    def test_patterns_trend(self, index, clock):
        error = ErrorInfo("E", "m")
        index.track(error)
        clock.advance(3600 + 60)
        index.track(error)
        index.track(error)
        [pattern] = index.patterns()
        assert pattern.frequency == 3
        assert pattern.trend == "increasing"

    def test_occurrences_since(self, index, clock):
        index.track(ErrorInfo("E", "m"))
        clock.advance(120)
        index.track(ErrorInfo("E", "m"))
        assert index.occurrences_since(60) == 1

    def test_analytics(self, index, clock):
        error_id = index.track(ErrorInfo("E", "Invalid input"), {"service": "api", "user_id": "u1"})
        clock.advance(30)
        index.resolve(error_id)
        stats = index.analytics()
        assert stats["total_records"] == 1
        assert stats["by_category"] == {"validation": 1}
        assert stats["by_service"] == {"api": 1}
        assert stats["affected_users"] == 1
        assert stats["resolution"]["average_resolution_seconds"] == 30.0
        assert stats["daily"][-1]["count"] == 1
        assert len(stats["daily"]) == 7
