# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - SERVICE
# =============================================================================
"""
Pipewatch Service

Builds and wires every pipeline component around one clock, one event
bus and one Prometheus registry, and owns the periodic tasks that are
not tied to a single component (correlation sweep, error retention
sweep, trace history sweep).

Features:
    - Producer-facing API: correlations, events, errors, metrics, spans
    - Derived signals fed into the metrics store on every collection
    - Metric-backed alert rule evaluation
    - Health checks with critical/non-critical components
    - Read-only status view for dashboards

Usage:
    with PipewatchService(load_config("config/pipewatch.yaml")) as service:
        cid = service.new_correlation({"job": "nightly"})
        with service.span(cid, "ingest", "pipeline"):
            service.log("info", "started", correlation_id=cid)
        service.close_pipeline(cid)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from prometheus_client import CollectorRegistry

from pipewatch.alerts import Alert, AlertManager, AlertRule
from pipewatch.bus import EventBus
from pipewatch.clock import Clock, PeriodicTask, SystemClock
from pipewatch.config import PipewatchConfig
from pipewatch.correlation import CorrelationTracker
from pipewatch.error_index import ErrorFingerprintIndex
from pipewatch.event_log import ErrorInfo, Event, LogLevel, StructuredEventLog
from pipewatch.exceptions import Outcome, ValidationError
from pipewatch.logger import correlation_context
from pipewatch.metrics import Metric, MetricsStore, MetricType, ResourceSampler
from pipewatch.notifications import NotificationChannel, NotificationDispatcher, create_channel
from pipewatch.tracing import PipelineTrace, SpanKind, SpanStatus, TraceTreeBuilder


logger = logging.getLogger(__name__)


# =============================================================================
# HEALTH CHECKS
# =============================================================================

class HealthCheck:
    """
    Aggregates component health.

    Usage::

        health = HealthCheck(clock)
        health.register("event_log", event_log_check)
        result = health.check_all()
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._checks: Dict[str, Callable[[], Dict[str, Any]]] = {}
        self._critical: Dict[str, bool] = {}

    def register(self, name: str, check_fn: Callable[[], Dict[str, Any]], critical: bool = True) -> None:
        """
        Register a health check.

        Args:
            name: Component name.
            check_fn: Callable returning a dict with at least ``{"healthy": bool}``.
            critical: Whether failure of this check makes the whole service unhealthy.
        """
        self._checks[name] = check_fn
        self._critical[name] = critical

    def check_all(self) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        overall_healthy = True

        for name, check_fn in self._checks.items():
            try:
                result = check_fn()
            except Exception as e:
                result = {"healthy": False, "error": str(e)}
            results[name] = result
            if not result.get("healthy", False) and self._critical.get(name, True):
                overall_healthy = False

        return {
            "healthy": overall_healthy,
            "timestamp": self.clock.now().isoformat(),
            "checks": results,
        }

    def check_one(self, name: str) -> Dict[str, Any]:
        check_fn = self._checks.get(name)
        if check_fn is None:
            return {"healthy": False, "error": f"Unknown check: {name}"}
        try:
            return check_fn()
        except Exception as e:
            return {"healthy": False, "error": str(e)}


# =============================================================================
# SERVICE
# =============================================================================

class PipewatchService:
    """The assembled observability pipeline."""

    def __init__(
        self,
        config: Optional[PipewatchConfig] = None,
        clock: Optional[Clock] = None,
        sampler: Optional[ResourceSampler] = None,
        channels: Optional[List[NotificationChannel]] = None,
    ):
        self.config = config or PipewatchConfig()
        self.clock = clock or SystemClock()
        self.registry = CollectorRegistry()
        self.bus = EventBus(self.clock)
        self._running = False

        # 1. Correlation and event log
        self.tracker = CorrelationTracker(self.config.correlation, self.clock, self.bus)
        self.event_log = StructuredEventLog(
            self.config.logging, self.clock, tracker=self.tracker, bus=self.bus, registry=self.registry
        )

        # 2. Tracing and error tracking
        self.tracer = TraceTreeBuilder(self.config.tracing, self.clock,
                                       sampler=sampler if self.config.tracing.sample_resources else None,
                                       event_log=self.event_log, bus=self.bus)
        self.tracker.set_open_span_probe(self.tracer.has_open_spans)
        self.errors = ErrorFingerprintIndex(self.config.error_tracking, self.clock,
                                            event_log=self.event_log, bus=self.bus)

        # 3. Metrics
        self.metrics = MetricsStore(self.config.metrics, self.clock, sampler=sampler,
                                    event_log=self.event_log, bus=self.bus, registry=self.registry)

        # 4. Notifications and alerting
        self.dispatcher = NotificationDispatcher(self.clock, self.config.alerting.notification_workers,
                                                 event_log=self.event_log, bus=self.bus,
                                                 registry=self.registry)
        for name, channel_config in self.config.alerting.channels.items():
            self.dispatcher.register(create_channel(name, channel_config, self.clock))
        for channel in channels or []:
            self.dispatcher.register(channel)
        self.alerts = AlertManager(self.config.alerting, self.clock, dispatcher=self.dispatcher,
                                   metric_source=self.metrics.latest_value, event_log=self.event_log,
                                   bus=self.bus, registry=self.registry)

        self.metrics.register_signal("errors.open_records", self.errors.open_count)
        self.metrics.register_signal("errors.occurrences_per_minute",
                                     lambda: self.errors.occurrences_since(60))
        self.metrics.register_signal("alerts.active", self.alerts.active_count)
        self.metrics.register_signal("events.buffered", self.event_log.buffered_count)

        self._sweeps = [
            PeriodicTask("correlation-sweep", self.config.correlation.sweep_interval,
                         self.tracker.sweep, self.clock),
            PeriodicTask("error-retention-sweep", self.config.error_tracking.sweep_interval,
                         self.errors.sweep, self.clock),
            PeriodicTask("trace-history-sweep", self.config.tracing.sweep_interval,
                         self.tracer.sweep_history, self.clock),
        ]

        self.health = HealthCheck(self.clock)
        self.health.register("event_log", self._event_log_health)
        self.health.register("notifications", self._dispatcher_health, critical=False)

        logger.info("Pipewatch service initialized")

    # -------------------------------------------------------------------------
    # Producer API
    # -------------------------------------------------------------------------

    def new_correlation(self, context: Optional[Dict[str, Any]] = None) -> str:
        return self.tracker.new_correlation(context)

    def emit(self, event: Event) -> Optional[Event]:
        """Emit a prebuilt event. Error-level events carrying an error are also fingerprinted."""
        stored = self.event_log.emit(event)
        self._fingerprint(event.level, event.error, event.correlation_id,
                          event.service, event.operation)
        return stored

    def log(
        self,
        level: Union[str, LogLevel],
        message: str,
        correlation_id: Optional[str] = None,
        error: Union[BaseException, ErrorInfo, None] = None,
        **kwargs: Any,
    ) -> Optional[Event]:
        """Log an event. Error-level events carrying an error are also fingerprinted."""
        event = self.event_log.log(level, message, correlation_id=correlation_id, error=error, **kwargs)
        self._fingerprint(LogLevel.parse(level), error,
                          event.correlation_id if event else correlation_id,
                          kwargs.get("service"), kwargs.get("operation"))
        return event

    def _fingerprint(
        self,
        level: LogLevel,
        error: Union[BaseException, ErrorInfo, None],
        correlation_id: Optional[str],
        service: Optional[str],
        operation: Optional[str],
    ) -> None:
        # the event itself is the log record, so the index does not emit another
        if error is None or level.rank < LogLevel.ERROR.rank:
            return
        context = {"correlation_id": correlation_id, "service": service, "operation": operation}
        self.errors.track(error, context={k: v for k, v in context.items() if v}, emit=False)

    def track_error(
        self,
        error: Any,
        correlation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **context: Any,
    ) -> str:
        if correlation_id:
            context["correlation_id"] = correlation_id
        return self.errors.track(error, context=context, metadata=metadata)

    def record_metric(
        self,
        name: str,
        value: float,
        type: Union[MetricType, str] = MetricType.GAUGE,
        unit: str = "",
        tags: Optional[Dict[str, str]] = None,
    ) -> Metric:
        return self.metrics.record(name, type, value, unit, tags)

    def start_span(
        self,
        correlation_id: str,
        name: str,
        kind: Union[SpanKind, str] = SpanKind.OPERATION,
        parent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        self.tracker.touch(correlation_id)
        return self.tracer.start_span(correlation_id, name, kind, parent_id, metadata)

    def end_span(
        self,
        span_id: str,
        status: Union[SpanStatus, str] = SpanStatus.COMPLETED,
        error: Union[BaseException, ErrorInfo, None] = None,
    ) -> Outcome:
        return self.tracer.end_span(span_id, status, error)

    @contextmanager
    def span(
        self,
        correlation_id: str,
        name: str,
        kind: Union[SpanKind, str] = SpanKind.OPERATION,
        parent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Iterator[str]:
        """
        Run a block inside a span. An exception ends the span as failed,
        is tracked by the error index and is re-raised.
        """
        span_id = self.start_span(correlation_id, name, kind, parent_id, metadata)
        with correlation_context(correlation_id, span_id=span_id):
            try:
                yield span_id
            except Exception as e:
                self.tracer.end_span(span_id, SpanStatus.FAILED, error=e)
                self.track_error(e, correlation_id=correlation_id, operation=name)
                raise
        self.tracer.end_span(span_id, SpanStatus.COMPLETED)

    def close_pipeline(
        self,
        correlation_id: str,
        status: Union[SpanStatus, str] = SpanStatus.COMPLETED,
    ) -> Optional[PipelineTrace]:
        return self.tracer.close_pipeline(correlation_id, status)

    def evaluate(self, rule_id: str, value: Any = None) -> Optional[Alert]:
        """Evaluate one rule, reading its metric from the store when no value is given."""
        rule = self.alerts.get_rule(rule_id)
        if rule is None:
            raise ValidationError(f"Unknown alert rule: {rule_id}")
        if value is None:
            value = self.metrics.latest_value(rule.condition.metric)
        return self.alerts.evaluate(rule, value)

    def add_rule(self, rule: Union[AlertRule, Dict[str, Any]]) -> AlertRule:
        if not isinstance(rule, AlertRule):
            rule = AlertRule.from_dict(rule)
        self.alerts.set_rule(rule)
        return rule

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def tasks(self) -> List[PeriodicTask]:
        return [self.event_log.flush_task, self.metrics.collect_task, *self.alerts.tasks, *self._sweeps]

    def start(self) -> None:
        if self._running:
            return
        self.event_log.start()
        self.metrics.start()
        self.alerts.start()
        for task in self._sweeps:
            task.start()
        if self.config.metrics.prometheus_port:
            self.metrics.start_http_server(self.config.metrics.prometheus_port)
        self._running = True
        logger.info("Pipewatch service started")

    def stop(self) -> None:
        """Cancel every timer and flush once. State stays queryable."""
        for task in self._sweeps:
            task.stop()
        self.alerts.stop()
        self.metrics.stop()
        result = self.event_log.stop()
        self._running = False
        if result.ok:
            logger.info(f"Pipewatch service stopped, final flush wrote {result.flushed} events")
        else:
            logger.warning(f"Pipewatch service stopped, final flush failed: {result.error}")

    def destroy(self) -> None:
        """Stop and release all state."""
        self.stop()
        self.alerts.destroy()
        self.dispatcher.shutdown()
        self.metrics.destroy()
        self.errors.destroy()
        self.tracer.destroy()
        self.tracker.destroy()
        self.event_log.destroy()
        self.bus.clear()
        logger.info("Pipewatch service destroyed")

    def __enter__(self) -> "PipewatchService":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def _event_log_health(self) -> Dict[str, Any]:
        stats = self.event_log.get_stats()
        return {
            "healthy": stats["last_flush_error"] is None,
            "buffered": stats["buffered"],
            "flush_failures": stats["flush_failures"],
            "last_flush_error": stats["last_flush_error"],
        }

    def _dispatcher_health(self) -> Dict[str, Any]:
        notifications = self.alerts.stats()["notifications"]
        return {
            "healthy": bool(self.dispatcher.channels()),
            "channels": self.dispatcher.channels(),
            "notifications": notifications,
        }

    def status(self) -> Dict[str, Any]:
        """Read-only view of the current pipeline state."""
        return {
            "timestamp": self.clock.now().isoformat(),
            "running": self._running,
            "active_pipelines": [trace.to_dict() for trace in self.tracer.active_pipelines()],
            "errors": self.errors.analytics(),
            "bottlenecks": [b.to_dict() for b in self.metrics.bottlenecks()],
            "active_alerts": [a.to_dict() for a in self.alerts.active_alerts()],
            "health": self.health.check_all(),
            "stats": {
                "events": self.event_log.get_stats(),
                "correlations": self.tracker.stats(),
                "traces": self.tracer.performance_summary(),
                "alerts": self.alerts.stats(),
            },
        }


__all__ = ["HealthCheck", "PipewatchService"]
