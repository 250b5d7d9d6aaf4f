"""Tests for pipewatch.metrics."""

from __future__ import annotations

import pytest

from pipewatch.bus import DomainEventType
from pipewatch.config import MetricsConfig, ThresholdPair
from pipewatch.exceptions import ValidationError
from pipewatch.metrics import (
    BottleneckDetector,
    BottleneckSeverity,
    MetricsStore,
    MetricType,
    ResourceSample,
    StaticResourceSampler,
    TrendDirection,
)


@pytest.fixture
def sampler():
    return StaticResourceSampler(ResourceSample(
        cpu_percent=30.0, memory_used=20.0, memory_total=100.0, disk_used=10.0, disk_total=100.0,
    ))


@pytest.fixture
def store(clock, sampler, event_log, bus):
    store = MetricsStore(MetricsConfig(), clock, sampler=sampler, event_log=event_log, bus=bus)
    yield store
    store.destroy()


class TestBottleneckDetector:
    @pytest.fixture
    def detector(self):
        return BottleneckDetector(MetricsConfig().thresholds)

    @pytest.mark.parametrize("name,value,expected", [
        ("host.cpu_usage", 95.0, BottleneckSeverity.CRITICAL),
        ("host.cpu_usage", 75.0, BottleneckSeverity.HIGH),
        ("host.cpu_usage", 50.0, None),
        ("api.response_time", 1200.0, BottleneckSeverity.MEDIUM),
        ("api.latency", 5000.0, BottleneckSeverity.CRITICAL),
        ("http.error_rate", 6.0, BottleneckSeverity.MEDIUM),
        ("queue.depth", 10_000.0, None),
    ])
    def test_tiers(self, detector, clock, name, value, expected):
        found = detector.check(name, value, clock.now())
        assert (found.severity if found else None) is expected

    def test_error_rate_wins_over_other_classes(self):
        assert BottleneckDetector.metric_class("worker.memory.error_rate") == "error_rate"

    def test_exact_name_threshold_takes_precedence(self, clock):
        detector = BottleneckDetector({"queue.depth": ThresholdPair(10.0, 100.0)})
        found = detector.check("queue.depth", 150.0, clock.now())
        assert found.severity is BottleneckSeverity.CRITICAL
        assert found.threshold == 100.0


class TestRecording:
    @pytest.mark.parametrize("value", ["12", None, True, float("nan"), float("inf")])
    def test_non_numeric_or_non_finite_rejected(self, store, value):
        with pytest.raises(ValidationError):
            store.record("m", "gauge", value)
        assert store.names() == []

    def test_unknown_type_rejected(self, store):
        with pytest.raises(ValidationError):
            store.record("m", "sparkline", 1.0)

    def test_ring_buffer_keeps_most_recent(self, clock):
        store = MetricsStore(MetricsConfig(max_samples=3), clock)
        for value in range(5):
            store.gauge("queue.depth", value)
        assert [m.value for m in store.series("queue.depth")] == [2.0, 3.0, 4.0]

    def test_counter_is_cumulative(self, store):
        store.counter("jobs.processed")
        store.counter("jobs.processed", 4)
        assert store.latest_value("jobs.processed") == 5.0
        assert store.latest("jobs.processed").type is MetricType.COUNTER

    def test_timer_uses_milliseconds(self, store):
        assert store.timer("api.response_time", 250).unit == "ms"


class TestBottleneckEvents:
    def test_event_only_on_new_or_worse_bottleneck(self, store, bus, event_log):
        sub = bus.subscribe([DomainEventType.BOTTLENECK_DETECTED])
        store.gauge("host.cpu", 75)
        store.gauge("host.cpu", 80)
        store.gauge("host.cpu", 95)

        severities = [e.payload["severity"] for e in sub.drain()]
        assert severities == ["high", "critical"]
        assert len(event_log.query(tags=["bottleneck"])) == 2

    def test_clearing_allows_a_new_event(self, store, bus):
        sub = bus.subscribe([DomainEventType.BOTTLENECK_DETECTED])
        store.gauge("host.cpu", 95)
        store.gauge("host.cpu", 10)
        assert store.detect_bottleneck("host.cpu") is None
        store.gauge("host.cpu", 95)
        assert len(sub.drain()) == 2

    def test_bottlenecks_sorted_by_severity(self, store):
        store.gauge("api.latency", 1500)
        store.gauge("host.cpu", 99)
        assert [b.severity for b in store.bottlenecks()] == [
            BottleneckSeverity.CRITICAL, BottleneckSeverity.MEDIUM,
        ]


class TestTrends:
    def record_all(self, store, values):
        for value in values:
            store.gauge("api.latency", value)

    def test_needs_minimum_samples(self, store):
        self.record_all(store, [100] * 9)
        assert store.trend("api.latency") is None

    @pytest.mark.parametrize("first,second,direction", [
        (100, 120, TrendDirection.DEGRADING),
        (100, 80, TrendDirection.IMPROVING),
        (100, 107, TrendDirection.VOLATILE),
        (100, 102, TrendDirection.STABLE),
    ])
    def test_direction(self, store, first, second, direction):
        self.record_all(store, [first] * 5 + [second] * 5)
        trend = store.trend("api.latency")
        assert trend.direction is direction
        assert trend.sample_count == 10

    def test_only_the_latest_window_counts(self, store):
        self.record_all(store, [500] * 10 + [100] * 10)
        assert store.trend("api.latency").direction is TrendDirection.STABLE


class TestCollection:
    def test_collect_records_signals_and_resources(self, store, bus):
        sub = bus.subscribe([DomainEventType.SNAPSHOT_COLLECTED])
        store.register_signal("alerts.active", lambda: 3)
        snap = store.collect()

        assert store.latest_value("alerts.active") == 3.0
        assert store.latest_value("system.memory_percent") == 20.0
        assert snap.metrics["system.cpu_percent"] == 30.0
        assert snap.resources.cpu_percent == 30.0
        assert sub.get_nowait().payload["snapshot_id"] == snap.id

    def test_failing_signal_is_skipped(self, store):
        def broken():
            raise RuntimeError("boom")

        store.register_signal("broken", broken)
        store.register_signal("ok", lambda: 1)
        store.collect()
        assert store.latest_value("broken") is None
        assert store.latest_value("ok") == 1.0

    def test_periodic_collection(self, store, clock):
        store.start()
        clock.advance(store.config.collection_interval * 2)
        assert len(store.snapshots()) == 2
        store.stop()
        clock.advance(store.config.collection_interval)
        assert len(store.snapshots()) == 2

    def test_update_config_thresholds(self, store):
        store.update_config(thresholds={"cpu": [10, 20]})
        store.gauge("host.cpu", 15)
        assert store.detect_bottleneck("host.cpu").threshold == 10.0
        with pytest.raises(ValidationError):
            store.update_config(bogus=1)


class TestAnalyticsAndExport:
    def test_analytics_without_resources(self, clock):
        store = MetricsStore(MetricsConfig(), clock)
        report = store.analytics()
        assert report["overall_health"] == "fair"
        assert report["performance_score"] == 50.0
        assert report["capacity_planning"]["recommended_scaling"] == "none"

    def test_analytics_with_healthy_resources(self, store):
        store.collect()
        report = store.analytics()
        assert report["overall_health"] == "excellent"
        assert report["performance_score"] == 100.0
        assert report["capacity_planning"]["advisory"] is True

    def test_analytics_under_pressure(self, store, sampler):
        sampler.set(cpu_percent=95.0)
        store.collect()
        report = store.analytics()
        assert report["overall_health"] == "critical"
        assert report["capacity_planning"]["recommended_scaling"] == "both"
        assert report["optimization_opportunities"][0]["area"] == "cpu"

    def test_render_prometheus(self, store):
        store.gauge("api.latency", 42)
        text = store.render_prometheus()
        assert 'pipewatch_metric_value{name="api.latency"} 42.0' in text
        assert "pipewatch_metric_samples_total" in text
