# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - TRACE TREE BUILDER
# =============================================================================
"""
Trace Tree Builder

Hierarchical span tracking per correlation id. A root span of kind
``pipeline`` opens a PipelineTrace that owns every span started under
the same correlation id until close_pipeline() finalizes it and runs the
bottleneck/parallelization analysis.

Features:
    - Parent/child span trees with ordered children
    - Dependency edges between spans
    - Close-time performance samples from an injected sampler
    - Duration, memory and cpu bottleneck flags per span
    - Advisory parallelization estimates (count x 25%)
    - Bounded trace history with retention sweep

Usage:
    tracer = TraceTreeBuilder(TraceConfig(), clock=clock)
    root = tracer.start_span(cid, "ingest", SpanKind.PIPELINE)
    fetch = tracer.start_span(cid, "fetch", SpanKind.STAGE, parent_id=root)
    tracer.end_span(fetch, SpanStatus.COMPLETED)
    trace = tracer.close_pipeline(cid)
    trace.analysis.bottlenecks
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set, Union, TYPE_CHECKING

from pipewatch.bus import DomainEventType, EventBus
from pipewatch.clock import Clock, SystemClock
from pipewatch.config import TraceConfig
from pipewatch.event_log import ErrorInfo
from pipewatch.exceptions import Outcome, ValidationError

if TYPE_CHECKING:
    from pipewatch.event_log import StructuredEventLog
    from pipewatch.metrics import ResourceSampler


logger = logging.getLogger(__name__)

MB = 1024 * 1024
PARALLEL_SAVINGS_PERCENT = 25


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class SpanKind(str, Enum):
    PIPELINE = "pipeline"
    STAGE = "stage"
    OPERATION = "operation"


class SpanStatus(str, Enum):
    STARTED = "started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SpanStatus.COMPLETED, SpanStatus.FAILED, SpanStatus.CANCELLED)


@dataclass(frozen=True)
class PerformanceSample:
    memory_bytes: float = 0.0
    cpu_percent: float = 0.0
    disk_bytes: float = 0.0
    network_bytes: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "memory_bytes": self.memory_bytes,
            "cpu_percent": self.cpu_percent,
            "disk_bytes": self.disk_bytes,
            "network_bytes": self.network_bytes,
        }


@dataclass
class TraceSpan:
    id: str
    correlation_id: str
    name: str
    kind: SpanKind
    start_time: datetime
    parent_id: Optional[str] = None
    end_time: Optional[datetime] = None
    status: SpanStatus = SpanStatus.STARTED
    duration_ms: Optional[float] = None
    children: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorInfo] = None
    start_sample: Optional[PerformanceSample] = None
    end_sample: Optional[PerformanceSample] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def performance(self) -> PerformanceSample:
        """Close-time sample, falling back to the start sample."""
        return self.end_sample or self.start_sample or PerformanceSample()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "correlation_id": self.correlation_id,
            "name": self.name,
            "kind": self.kind.value,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "children": list(self.children),
            "dependencies": list(self.dependencies),
            "performance": self.performance.to_dict(),
            "metadata": dict(self.metadata),
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class SpanBreakdown:
    span_id: str
    span_name: str
    duration_ms: float
    percentage: float
    memory_bytes: float
    cpu_percent: float


@dataclass(frozen=True)
class BottleneckFinding:
    span_id: str
    span_name: str
    issue: str
    impact: str
    recommendation: str


@dataclass(frozen=True)
class OptimizationOpportunity:
    span_name: str
    opportunity: str
    estimated_savings_percent: float
    effort: str
    advisory: bool = True


@dataclass(frozen=True)
class ParallelizationOpportunity:
    """Spans with no dependency edge into them. Savings are a rough estimate."""
    span_names: List[str]
    estimated_savings_percent: float
    advisory: bool = True


@dataclass
class PerformanceAnalysis:
    total_duration_ms: float = 0.0
    breakdown: List[SpanBreakdown] = field(default_factory=list)
    bottlenecks: List[BottleneckFinding] = field(default_factory=list)
    optimizations: List[OptimizationOpportunity] = field(default_factory=list)
    parallelization: List[ParallelizationOpportunity] = field(default_factory=list)


@dataclass
class PipelineTrace:
    correlation_id: str
    name: str
    root_span_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: SpanStatus = SpanStatus.STARTED
    duration_ms: Optional[float] = None
    span_ids: List[str] = field(default_factory=list)
    analysis: Optional[PerformanceAnalysis] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "name": self.name,
            "root_span_id": self.root_span_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "span_count": len(self.span_ids),
            "bottlenecks": len(self.analysis.bottlenecks) if self.analysis else 0,
        }


def _parse_enum(enum_cls, value, what: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {what}: {value!r}")


# =============================================================================
# TRACE TREE BUILDER
# =============================================================================

class TraceTreeBuilder:
    """Builds span trees and pipeline traces."""

    def __init__(
        self,
        config: Optional[TraceConfig] = None,
        clock: Optional[Clock] = None,
        sampler: Optional["ResourceSampler"] = None,
        event_log: Optional["StructuredEventLog"] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config or TraceConfig()
        self.clock = clock or SystemClock()
        self.sampler = sampler
        self.event_log = event_log
        self.bus = bus
        self._spans: Dict[str, TraceSpan] = {}
        self._open_by_correlation: Dict[str, Set[str]] = {}
        self._active: Dict[str, PipelineTrace] = {}
        self._history: Deque[PipelineTrace] = deque(maxlen=self.config.max_history)
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Span lifecycle
    # -------------------------------------------------------------------------

    def start_span(
        self,
        correlation_id: str,
        name: str,
        kind: Union[SpanKind, str] = SpanKind.OPERATION,
        parent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        kind = _parse_enum(SpanKind, kind, "span kind")
        if not correlation_id:
            raise ValidationError("start_span requires a correlation id")
        if not name:
            raise ValidationError("start_span requires a name")

        now = self.clock.now()
        sample = self._sample()

        with self._lock:
            parent = None
            if parent_id is not None:
                parent = self._spans.get(parent_id)
                if parent is None:
                    raise ValidationError(f"Unknown parent span: {parent_id}")
                if parent.correlation_id != correlation_id:
                    raise ValidationError(
                        f"Parent span {parent_id} belongs to correlation {parent.correlation_id}"
                    )
            elif kind is SpanKind.PIPELINE and correlation_id in self._active:
                raise ValidationError(f"Pipeline already active for correlation {correlation_id}")

            span = TraceSpan(
                id=uuid.uuid4().hex,
                correlation_id=correlation_id,
                name=name,
                kind=kind,
                start_time=now,
                parent_id=parent_id,
                metadata=dict(metadata or {}),
                start_sample=sample,
            )
            self._spans[span.id] = span
            if parent is not None:
                parent.children.append(span.id)
            self._open_by_correlation.setdefault(correlation_id, set()).add(span.id)

            if kind is SpanKind.PIPELINE and parent is None:
                self._active[correlation_id] = PipelineTrace(
                    correlation_id=correlation_id,
                    name=name,
                    root_span_id=span.id,
                    start_time=now,
                    span_ids=[span.id],
                )
            elif correlation_id in self._active:
                self._active[correlation_id].span_ids.append(span.id)

        if self.bus:
            self.bus.publish(DomainEventType.SPAN_STARTED, span_id=span.id,
                             correlation_id=correlation_id, name=name, kind=kind.value)
        if self.event_log:
            self.event_log.debug(f"Span started: {name}", correlation_id=correlation_id,
                                 operation=name, metadata={"span_id": span.id, "kind": kind.value,
                                                           "type": "trace"})
        return span.id

    def mark_running(self, span_id: str) -> Outcome:
        with self._lock:
            span = self._spans.get(span_id)
            if span is None or not span.is_open:
                reason = "unknown span" if span is None else "span already ended"
            else:
                span.status = SpanStatus.RUNNING
                return Outcome.success(span_id)
        self._warn(f"Cannot mark span running: {reason}", span_id)
        return Outcome.failure(reason, span_id)

    def end_span(
        self,
        span_id: str,
        status: Union[SpanStatus, str] = SpanStatus.COMPLETED,
        error: Union[BaseException, ErrorInfo, None] = None,
    ) -> Outcome:
        """
        Close a span. Ending an unknown or already-ended span is a no-op
        reported through a warning event and a failed Outcome.
        """
        status = _parse_enum(SpanStatus, status, "span status")
        if not status.is_terminal:
            raise ValidationError(f"end_span requires a terminal status, got {status.value}")
        if isinstance(error, BaseException):
            error = ErrorInfo.from_exception(error)

        sample = self._sample()
        with self._lock:
            span = self._spans.get(span_id)
            if span is None:
                reason = "unknown span"
            elif not span.is_open:
                reason = "span already ended"
            else:
                self._close_locked(span, status, error, sample)
                reason = ""

        if reason:
            self._warn(f"end_span ignored: {reason}", span_id,
                       span.correlation_id if span is not None else None)
            return Outcome.failure(reason, span_id)

        if self.bus:
            self.bus.publish(DomainEventType.SPAN_ENDED, span_id=span_id,
                             correlation_id=span.correlation_id, status=status.value,
                             duration_ms=span.duration_ms)
        if self.event_log:
            self.event_log.debug(
                f"Span ended: {span.name} {status.value}",
                correlation_id=span.correlation_id,
                operation=span.name,
                metadata={"span_id": span_id, "duration_ms": span.duration_ms, "type": "trace"},
            )
        return Outcome.success(span_id)

    def _close_locked(
        self,
        span: TraceSpan,
        status: SpanStatus,
        error: Optional[ErrorInfo],
        sample: Optional[PerformanceSample],
    ) -> None:
        now = self.clock.now()
        span.end_time = max(now, span.start_time)
        span.duration_ms = (span.end_time - span.start_time).total_seconds() * 1000.0
        span.status = status
        span.error = error
        span.end_sample = sample
        open_ids = self._open_by_correlation.get(span.correlation_id)
        if open_ids is not None:
            open_ids.discard(span.id)
            if not open_ids:
                del self._open_by_correlation[span.correlation_id]

    def add_dependency(self, span_id: str, depends_on_id: str) -> Outcome:
        """Record that span_id depends on depends_on_id."""
        with self._lock:
            span = self._spans.get(span_id)
            other = self._spans.get(depends_on_id)
            if span is None or other is None:
                raise ValidationError("add_dependency requires two known spans")
            if span.correlation_id != other.correlation_id:
                raise ValidationError("Dependencies must stay within one correlation id")
            if span_id == depends_on_id:
                raise ValidationError("A span cannot depend on itself")
            if depends_on_id not in span.dependencies:
                span.dependencies.append(depends_on_id)
        return Outcome.success(span_id)

    def close_pipeline(
        self,
        correlation_id: str,
        status: Union[SpanStatus, str] = SpanStatus.COMPLETED,
    ) -> Optional[PipelineTrace]:
        """
        Finalize the active pipeline for correlation_id: end the root,
        cancel spans still open, analyze once and move to history.
        """
        status = _parse_enum(SpanStatus, status, "span status")
        if not status.is_terminal:
            raise ValidationError(f"close_pipeline requires a terminal status, got {status.value}")

        sample = self._sample()
        with self._lock:
            trace = self._active.pop(correlation_id, None)
            if trace is None:
                missing = True
            else:
                missing = False
                cancelled = 0
                for sid in trace.span_ids:
                    span = self._spans[sid]
                    if span.is_open and sid != trace.root_span_id:
                        self._close_locked(span, SpanStatus.CANCELLED, None, sample)
                        cancelled += 1
                root = self._spans[trace.root_span_id]
                if root.is_open:
                    self._close_locked(root, status, None, sample)
                trace.end_time = root.end_time
                trace.duration_ms = root.duration_ms
                trace.status = status
                trace.analysis = self.analyze(trace)
                self._history.append(trace)

        if missing:
            self._warn("close_pipeline ignored: no active pipeline", None, correlation_id)
            return None

        if cancelled:
            logger.info(f"Cancelled {cancelled} open spans closing pipeline {trace.name}")
        analysis = trace.analysis
        if self.bus:
            self.bus.publish(DomainEventType.PIPELINE_CLOSED, correlation_id=correlation_id,
                             name=trace.name, status=status.value, duration_ms=trace.duration_ms,
                             bottlenecks=len(analysis.bottlenecks))
        if self.event_log:
            self.event_log.pipeline(trace.name, "pipeline", status.value,
                                    correlation_id=correlation_id,
                                    metadata={"duration_ms": trace.duration_ms,
                                              "bottlenecks": len(analysis.bottlenecks)})
            for finding in analysis.bottlenecks:
                self.event_log.warn(
                    f"Pipeline bottleneck in {finding.span_name}: {finding.issue}",
                    correlation_id=correlation_id,
                    operation=finding.span_name,
                    tags=["bottleneck", finding.impact],
                    metadata={"recommendation": finding.recommendation, "type": "trace"},
                )
        return trace

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def analyze(self, trace: PipelineTrace) -> PerformanceAnalysis:
        """Bottleneck, optimization and parallelization analysis over non-root spans."""
        thresholds = self.config.thresholds
        with self._lock:
            spans = [copy.copy(self._spans[sid]) for sid in trace.span_ids
                     if sid != trace.root_span_id and sid in self._spans]
            root = self._spans.get(trace.root_span_id)
            total = (root.duration_ms if root and root.duration_ms is not None else 0.0)

        analysis = PerformanceAnalysis(total_duration_ms=total)
        for span in spans:
            duration = span.duration_ms or 0.0
            perf = span.performance
            analysis.breakdown.append(SpanBreakdown(
                span_id=span.id,
                span_name=span.name,
                duration_ms=duration,
                percentage=(duration / total * 100.0) if total > 0 else 0.0,
                memory_bytes=perf.memory_bytes,
                cpu_percent=perf.cpu_percent,
            ))

            if duration > thresholds.duration_error_ms:
                analysis.bottlenecks.append(BottleneckFinding(
                    span.id, span.name,
                    f"Execution time exceeds error threshold ({duration:.0f}ms > {thresholds.duration_error_ms:.0f}ms)",
                    "critical",
                    "Optimize the stage or break it into smaller operations",
                ))
            elif duration > thresholds.duration_warning_ms:
                analysis.bottlenecks.append(BottleneckFinding(
                    span.id, span.name,
                    f"Execution time exceeds warning threshold ({duration:.0f}ms > {thresholds.duration_warning_ms:.0f}ms)",
                    "high",
                    "Consider optimizing the stage",
                ))

            if perf.memory_bytes > thresholds.memory_error_mb * MB:
                analysis.bottlenecks.append(BottleneckFinding(
                    span.id, span.name, f"High memory usage ({perf.memory_bytes / MB:.0f}MB)",
                    "critical", "Reduce memory usage or increase available memory",
                ))
            elif perf.memory_bytes > thresholds.memory_warning_mb * MB:
                analysis.bottlenecks.append(BottleneckFinding(
                    span.id, span.name, f"Elevated memory usage ({perf.memory_bytes / MB:.0f}MB)",
                    "high", "Review memory allocation in this stage",
                ))

            if perf.cpu_percent > thresholds.cpu_error_percent:
                analysis.bottlenecks.append(BottleneckFinding(
                    span.id, span.name, f"High CPU usage ({perf.cpu_percent:.0f}%)",
                    "critical", "Reduce CPU work or concurrent operations",
                ))
            elif perf.cpu_percent > thresholds.cpu_warning_percent:
                analysis.bottlenecks.append(BottleneckFinding(
                    span.id, span.name, f"Elevated CPU usage ({perf.cpu_percent:.0f}%)",
                    "high", "Review CPU-bound work in this stage",
                ))

            if span.dependencies:
                analysis.optimizations.append(OptimizationOpportunity(
                    span.name, "Stage has dependencies that could be optimized", 20, "medium",
                ))
            if perf.memory_bytes > thresholds.memory_warning_mb * MB:
                analysis.optimizations.append(OptimizationOpportunity(
                    span.name, "Memory usage could be optimized", 30, "high",
                ))

        independent = [s.name for s in spans if not s.dependencies]
        if len(independent) > 1:
            analysis.parallelization.append(ParallelizationOpportunity(
                span_names=independent,
                estimated_savings_percent=len(independent) * PARALLEL_SAVINGS_PERCENT,
            ))
        return analysis

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def has_open_spans(self, correlation_id: str) -> bool:
        with self._lock:
            return bool(self._open_by_correlation.get(correlation_id))

    def get_span(self, span_id: str) -> Optional[TraceSpan]:
        """Copy of the span; mutating it does not affect the builder."""
        with self._lock:
            span = self._spans.get(span_id)
            if span is None:
                return None
            snapshot = copy.copy(span)
            snapshot.children = list(span.children)
            snapshot.dependencies = list(span.dependencies)
            snapshot.metadata = dict(span.metadata)
            return snapshot

    def spans_for(self, correlation_id: str) -> List[TraceSpan]:
        with self._lock:
            ids = [s.id for s in self._spans.values() if s.correlation_id == correlation_id]
        return [s for s in (self.get_span(i) for i in ids) if s is not None]

    def get_pipeline(self, correlation_id: str) -> Optional[PipelineTrace]:
        with self._lock:
            trace = self._active.get(correlation_id)
            if trace is None:
                for candidate in reversed(self._history):
                    if candidate.correlation_id == correlation_id:
                        trace = candidate
                        break
            return copy.copy(trace) if trace else None

    def active_pipelines(self) -> List[PipelineTrace]:
        with self._lock:
            return [copy.copy(t) for t in self._active.values()]

    def history(self, limit: Optional[int] = None) -> List[PipelineTrace]:
        with self._lock:
            traces = list(self._history)
        return traces[-limit:] if limit else traces

    def trace_tree(self, correlation_id: str) -> List[Dict[str, Any]]:
        """Nested dicts for every root span of the correlation id."""
        with self._lock:
            roots = [s for s in self._spans.values()
                     if s.correlation_id == correlation_id and s.parent_id is None]
            return [self._tree_locked(r) for r in sorted(roots, key=lambda s: s.start_time)]

    def _tree_locked(self, span: TraceSpan) -> Dict[str, Any]:
        node = span.to_dict()
        node["children"] = [self._tree_locked(self._spans[c]) for c in span.children if c in self._spans]
        return node

    def performance_summary(self) -> Dict[str, Any]:
        with self._lock:
            traces = list(self._history)
            durations: Dict[str, List[float]] = {}
            for trace in traces:
                for sid in trace.span_ids:
                    span = self._spans.get(sid)
                    if span is None or sid == trace.root_span_id:
                        continue
                    durations.setdefault(span.name, []).append(span.duration_ms or 0.0)

        total_duration = sum(t.duration_ms or 0.0 for t in traces)
        slowest = sorted(
            ({"span": name, "average_duration_ms": sum(v) / len(v)} for name, v in durations.items()),
            key=lambda d: d["average_duration_ms"],
            reverse=True,
        )[:5]
        return {
            "total_traces": len(traces),
            "average_duration_ms": total_duration / len(traces) if traces else 0.0,
            "total_bottlenecks": sum(len(t.analysis.bottlenecks) for t in traces if t.analysis),
            "optimization_opportunities": sum(len(t.analysis.optimizations) for t in traces if t.analysis),
            "top_slowest_spans": slowest,
        }

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def sweep_history(self) -> int:
        """Drop traces past retention and the spans they own."""
        cutoff = self.clock.now() - timedelta(hours=self.config.retention_hours)
        with self._lock:
            kept = [t for t in self._history if t.start_time > cutoff]
            dropped = [t for t in self._history if t.start_time <= cutoff]
            self._history = deque(kept, maxlen=self.config.max_history)
            owned = {sid for t in kept for sid in t.span_ids}
            owned.update(sid for t in self._active.values() for sid in t.span_ids)
            stale = [
                sid for sid, span in self._spans.items()
                if sid not in owned and not span.is_open and span.end_time <= cutoff
            ]
            for trace in dropped:
                stale.extend(sid for sid in trace.span_ids if sid not in owned)
            for sid in set(stale):
                self._spans.pop(sid, None)
        if dropped:
            logger.debug(f"Swept {len(dropped)} pipeline traces from history")
        return len(dropped)

    def destroy(self) -> None:
        with self._lock:
            self._spans.clear()
            self._open_by_correlation.clear()
            self._active.clear()
            self._history.clear()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _sample(self) -> Optional[PerformanceSample]:
        if self.sampler is None or not self.config.sample_resources:
            return None
        try:
            resources = self.sampler.sample()
        except Exception as e:
            logger.warning(f"Resource sampler failed: {e}")
            return None
        return PerformanceSample(
            memory_bytes=resources.memory_used,
            cpu_percent=resources.cpu_percent,
            disk_bytes=resources.disk_used,
            network_bytes=resources.network_bytes,
        )

    def _warn(self, message: str, span_id: Optional[str], correlation_id: Optional[str] = None) -> None:
        logger.warning(f"{message} ({span_id})")
        if self.event_log:
            self.event_log.warn(
                message,
                correlation_id=correlation_id,
                operation="trace",
                tags=["logic-error"],
                metadata={"span_id": span_id, "type": "trace"},
            )


__all__ = [
    "SpanKind",
    "SpanStatus",
    "PerformanceSample",
    "TraceSpan",
    "SpanBreakdown",
    "BottleneckFinding",
    "OptimizationOpportunity",
    "ParallelizationOpportunity",
    "PerformanceAnalysis",
    "PipelineTrace",
    "TraceTreeBuilder",
]
