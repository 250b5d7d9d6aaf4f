"""Producers calling into shared components from many threads at once."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from pipewatch.bus import DomainEventType
from pipewatch.config import ErrorTrackingConfig, MetricsConfig, TraceConfig
from pipewatch.error_index import ErrorFingerprintIndex
from pipewatch.event_log import ErrorInfo
from pipewatch.metrics import MetricsStore
from pipewatch.tracing import SpanKind, SpanStatus, TraceTreeBuilder

THREADS = 8


def run_concurrently(fn, threads=THREADS):
    """Run fn(worker_index) on every thread, released together by a barrier."""
    barrier = threading.Barrier(threads)

    def worker(n):
        barrier.wait(timeout=10)
        return fn(n)

    with ThreadPoolExecutor(max_workers=threads) as pool:
        return [f.result(timeout=60) for f in [pool.submit(worker, n) for n in range(threads)]]


class TestEventLogProducers:
    def test_every_event_kept_in_per_correlation_order(self, event_log, tracker):
        per_thread = 200
        cids = [tracker.new_correlation() for _ in range(THREADS)]

        def produce(n):
            for i in range(per_thread):
                event_log.log("info", f"step-{i}", correlation_id=cids[n])

        run_concurrently(produce)

        events = event_log.query()
        assert len(events) == THREADS * per_thread
        assert len({e.id for e in events}) == len(events)
        for cid in cids:
            assert [e.message for e in event_log.query(correlation_id=cid)] == [
                f"step-{i}" for i in range(per_thread)
            ]


class TestErrorIndexProducers:
    def test_concurrent_occurrences_land_on_one_record(self, clock, event_log, bus):
        index = ErrorFingerprintIndex(ErrorTrackingConfig(notification_frequency=10), clock, event_log, bus)
        threshold = bus.subscribe([DomainEventType.ERROR_THRESHOLD_EXCEEDED])
        error = ErrorInfo("TimeoutError", "upstream timed out", "TimeoutError: upstream timed out")
        per_thread = 50

        def produce(n):
            return {index.track(error, {"correlation_id": f"cid-{n}-{i}"}, emit=False)
                    for i in range(per_thread)}

        ids = set().union(*run_concurrently(produce))

        [error_id] = ids
        record = index.get(error_id)
        assert record.occurrence_count == THREADS * per_thread
        assert len(record.affected_correlation_ids) == THREADS * per_thread
        assert len(threshold.drain()) == 1


class TestMetricsProducers:
    def test_counter_increments_are_not_lost(self, clock):
        store = MetricsStore(MetricsConfig(), clock)
        per_thread = 2000
        try:
            run_concurrently(lambda n: [store.counter("requests") for _ in range(per_thread)])
            assert store.latest_value("requests") == float(THREADS * per_thread)
        finally:
            store.destroy()

    def test_concurrent_records_keep_every_sample(self, clock):
        store = MetricsStore(MetricsConfig(max_samples=10000), clock)
        per_thread = 500
        try:
            run_concurrently(lambda n: [store.gauge("queue.depth", n) for _ in range(per_thread)])
            assert len(store.series("queue.depth")) == THREADS * per_thread
        finally:
            store.destroy()


class TestTracerProducers:
    @pytest.fixture
    def tracer(self, clock, event_log, bus):
        tracer = TraceTreeBuilder(TraceConfig(), clock, event_log=event_log, bus=bus)
        yield tracer
        tracer.destroy()

    def test_children_of_a_shared_root_stay_consistent(self, tracer):
        root = tracer.start_span("shared", "batch", SpanKind.PIPELINE)
        per_thread = 50

        def produce(n):
            ids = []
            for i in range(per_thread):
                span_id = tracer.start_span("shared", f"item-{n}-{i}", SpanKind.OPERATION, parent_id=root)
                assert tracer.end_span(span_id).ok
                ids.append(span_id)
            return ids

        started = [span_id for ids in run_concurrently(produce) for span_id in ids]

        children = tracer.get_span(root).children
        assert sorted(children) == sorted(started)
        assert len(set(children)) == THREADS * per_thread
        assert len(tracer.spans_for("shared")) == THREADS * per_thread + 1
        assert tracer.end_span(root).ok
        assert not tracer.has_open_spans("shared")

    def test_independent_pipelines_per_thread(self, tracer):
        def produce(n):
            cid = f"run-{n}"
            root = tracer.start_span(cid, f"pipeline-{n}", SpanKind.PIPELINE)
            for i in range(20):
                stage = tracer.start_span(cid, f"stage-{i}", SpanKind.STAGE, parent_id=root)
                tracer.end_span(stage)
            tracer.end_span(root)
            return cid

        for cid in run_concurrently(produce):
            spans = tracer.spans_for(cid)
            assert len(spans) == 21
            assert all(s.status is SpanStatus.COMPLETED for s in spans)
