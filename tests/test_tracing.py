"""Tests for pipewatch.tracing."""

from __future__ import annotations

import pytest

from pipewatch.bus import DomainEventType
from pipewatch.config import TraceConfig
from pipewatch.exceptions import LogicError, ValidationError
from pipewatch.metrics import ResourceSample, StaticResourceSampler
from pipewatch.tracing import MB, SpanKind, SpanStatus, TraceTreeBuilder


@pytest.fixture
def sampler():
    return StaticResourceSampler(ResourceSample(cpu_percent=10.0, memory_used=10 * MB))


@pytest.fixture
def tracer(clock, sampler, event_log, bus):
    return TraceTreeBuilder(TraceConfig(), clock, sampler=sampler, event_log=event_log, bus=bus)


def run_stage(tracer, clock, cid, root, name, duration_s):
    span = tracer.start_span(cid, name, SpanKind.STAGE, parent_id=root)
    clock.advance(duration_s)
    tracer.end_span(span)
    return span


class TestSpanLifecycle:
    def test_end_time_never_before_start(self, tracer, clock):
        span_id = tracer.start_span("cid", "op")
        clock.advance(1.5)
        assert tracer.end_span(span_id)
        span = tracer.get_span(span_id)
        assert span.end_time >= span.start_time
        assert span.duration_ms == 1500.0
        assert span.status is SpanStatus.COMPLETED

    def test_double_close_is_a_reported_no_op(self, tracer, clock, event_log):
        span_id = tracer.start_span("cid", "op")
        clock.advance(2)
        tracer.end_span(span_id)
        clock.advance(5)

        outcome = tracer.end_span(span_id, SpanStatus.FAILED)

        assert not outcome
        assert outcome.reason == "span already ended"
        span = tracer.get_span(span_id)
        assert span.duration_ms == 2000.0
        assert span.status is SpanStatus.COMPLETED
        warnings = event_log.query(level="warn", tags=["logic-error"])
        assert len(warnings) == 1

    def test_failed_outcome_can_be_raised(self, tracer):
        span_id = tracer.start_span("cid", "op")
        assert tracer.end_span(span_id).raise_for_error() is None

        outcome = tracer.end_span(span_id)

        assert isinstance(outcome.error, LogicError)
        with pytest.raises(LogicError, match="span already ended"):
            outcome.raise_for_error()

    def test_unknown_span_end_fails(self, tracer):
        outcome = tracer.end_span("nope")
        assert not outcome and outcome.reason == "unknown span"

    def test_non_terminal_end_status_rejected(self, tracer):
        span_id = tracer.start_span("cid", "op")
        with pytest.raises(ValidationError):
            tracer.end_span(span_id, SpanStatus.RUNNING)

    def test_children_are_ordered_and_tree_nested(self, tracer):
        root = tracer.start_span("cid", "pipeline", SpanKind.PIPELINE)
        first = tracer.start_span("cid", "a", parent_id=root)
        second = tracer.start_span("cid", "b", parent_id=root)
        tracer.start_span("cid", "a1", parent_id=first)

        assert tracer.get_span(root).children == [first, second]
        tree = tracer.trace_tree("cid")
        assert len(tree) == 1
        assert [c["name"] for c in tree[0]["children"]] == ["a", "b"]
        assert tree[0]["children"][0]["children"][0]["name"] == "a1"

    def test_parent_must_share_correlation(self, tracer):
        root = tracer.start_span("cid-1", "p", SpanKind.PIPELINE)
        with pytest.raises(ValidationError):
            tracer.start_span("cid-2", "child", parent_id=root)

    def test_get_span_returns_a_copy(self, tracer):
        span_id = tracer.start_span("cid", "op")
        tracer.get_span(span_id).children.append("tampered")
        assert tracer.get_span(span_id).children == []

    def test_open_span_probe(self, tracer):
        span_id = tracer.start_span("cid", "op")
        assert tracer.has_open_spans("cid")
        tracer.end_span(span_id)
        assert not tracer.has_open_spans("cid")

    def test_dependency_validation(self, tracer):
        a = tracer.start_span("cid", "a")
        b = tracer.start_span("cid", "b")
        other = tracer.start_span("cid-2", "c")
        assert tracer.add_dependency(b, a)
        with pytest.raises(ValidationError):
            tracer.add_dependency(a, a)
        with pytest.raises(ValidationError):
            tracer.add_dependency(a, other)

    def test_span_samples_resources(self, tracer, clock, sampler):
        span_id = tracer.start_span("cid", "op")
        sampler.set(cpu_percent=55.0)
        tracer.end_span(span_id)
        assert tracer.get_span(span_id).performance.cpu_percent == 55.0


class TestPipelineAnalysis:
    def test_duration_bottleneck_tiers(self, tracer, clock):
        root = tracer.start_span("cid", "etl", SpanKind.PIPELINE)
        slow = run_stage(tracer, clock, "cid", root, "slow", 31)
        medium = run_stage(tracer, clock, "cid", root, "medium", 6)
        run_stage(tracer, clock, "cid", root, "fast", 1)

        trace = tracer.close_pipeline("cid")

        impacts = {f.span_id: f.impact for f in trace.analysis.bottlenecks}
        assert impacts == {slow: "critical", medium: "high"}

    def test_memory_and_cpu_bottlenecks(self, tracer, clock, sampler):
        root = tracer.start_span("cid", "etl", SpanKind.PIPELINE)
        span = tracer.start_span("cid", "hungry", parent_id=root)
        sampler.set(memory_used=600 * MB, cpu_percent=85.0)
        tracer.end_span(span)
        sampler.set(memory_used=10 * MB, cpu_percent=10.0)

        trace = tracer.close_pipeline("cid")

        issues = sorted((f.impact, f.issue.split(" (")[0]) for f in trace.analysis.bottlenecks)
        assert issues == [("critical", "High memory usage"), ("high", "Elevated CPU usage")]
        assert any(o.estimated_savings_percent == 30 for o in trace.analysis.optimizations)

    def test_parallelization_estimate(self, tracer, clock):
        root = tracer.start_span("cid", "etl", SpanKind.PIPELINE)
        a = run_stage(tracer, clock, "cid", root, "a", 1)
        run_stage(tracer, clock, "cid", root, "b", 1)
        c = run_stage(tracer, clock, "cid", root, "c", 1)
        tracer.add_dependency(c, a)

        trace = tracer.close_pipeline("cid")

        [parallel] = trace.analysis.parallelization
        assert parallel.span_names == ["a", "b"]
        assert parallel.estimated_savings_percent == 50
        assert parallel.advisory
        assert [o.span_name for o in trace.analysis.optimizations] == ["c"]

    def test_close_cancels_open_spans_once(self, tracer, clock, bus):
        sub = bus.subscribe([DomainEventType.PIPELINE_CLOSED])
        root = tracer.start_span("cid", "etl", SpanKind.PIPELINE)
        dangling = tracer.start_span("cid", "dangling", parent_id=root)
        clock.advance(3)

        trace = tracer.close_pipeline("cid")

        assert tracer.get_span(dangling).status is SpanStatus.CANCELLED
        assert trace.duration_ms == 3000.0
        assert tracer.get_pipeline("cid").status is SpanStatus.COMPLETED
        assert tracer.active_pipelines() == []
        assert len(sub.drain()) == 1
        assert tracer.close_pipeline("cid") is None

    def test_breakdown_percentages(self, tracer, clock):
        root = tracer.start_span("cid", "etl", SpanKind.PIPELINE)
        run_stage(tracer, clock, "cid", root, "a", 1)
        run_stage(tracer, clock, "cid", root, "b", 3)
        trace = tracer.close_pipeline("cid")
        assert [round(b.percentage) for b in trace.analysis.breakdown] == [25, 75]

    def test_performance_summary(self, tracer, clock):
        for cid in ("one", "two"):
            root = tracer.start_span(cid, "etl", SpanKind.PIPELINE)
            run_stage(tracer, clock, cid, root, "load", 6)
            tracer.close_pipeline(cid)

        summary = tracer.performance_summary()
        assert summary["total_traces"] == 2
        assert summary["total_bottlenecks"] == 2
        assert summary["top_slowest_spans"][0] == {"span": "load", "average_duration_ms": 6000.0}

    def test_sweep_history_drops_expired_traces(self, clock, event_log):
        tracer = TraceTreeBuilder(TraceConfig(retention_hours=1), clock, event_log=event_log)
        root = tracer.start_span("old", "etl", SpanKind.PIPELINE)
        tracer.close_pipeline("old")
        clock.advance(7200)
        tracer.start_span("new", "etl", SpanKind.PIPELINE)
        tracer.close_pipeline("new")

        assert tracer.sweep_history() == 1
        assert [t.correlation_id for t in tracer.history()] == ["new"]
        assert tracer.get_span(root) is None
