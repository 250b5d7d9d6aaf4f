# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - PACKAGE
# =============================================================================
"""
Pipewatch Package

Observability and alerting pipeline: ingests structured runtime events,
correlates them across asynchronous call chains, builds execution traces,
deduplicates errors, derives metrics with bottleneck and trend detection,
and drives alerts through escalation and multi-channel notification.

Components:
    - CorrelationTracker: correlation ids and their lifetime
    - StructuredEventLog: buffered structured events with file/remote sinks
    - TraceTreeBuilder: span trees and pipeline performance analysis
    - ErrorFingerprintIndex: error deduplication and analytics
    - MetricsStore: metric ring buffers, bottlenecks, trends, Prometheus
    - AlertManager: rule evaluation and alert lifecycle
    - NotificationDispatcher: isolated fan-out to notification channels
    - PipewatchService: everything wired together

Usage:
    from pipewatch import PipewatchService, PipewatchConfig

    service = PipewatchService(PipewatchConfig())
    service.start()
    cid = service.new_correlation({"job": "import"})
    service.log("info", "import started", correlation_id=cid)
    service.stop()
"""

from pipewatch.alerts import (
    Alert,
    AlertCondition,
    AlertManager,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    EscalationPolicy,
    Operator,
    SuppressionPolicy,
)
from pipewatch.bus import DomainEvent, DomainEventType, EventBus, Subscription
from pipewatch.clock import Clock, ManualClock, PeriodicTask, SystemClock
from pipewatch.config import PipewatchConfig, load_config
from pipewatch.correlation import CorrelationTracker
from pipewatch.error_index import ErrorFingerprintIndex, ErrorSeverity, compute_fingerprint
from pipewatch.event_log import Event, LogLevel, StructuredEventLog
from pipewatch.exceptions import LogicError, Outcome, PipewatchError, TransientIOError, ValidationError
from pipewatch.logger import configure_logging, correlation_context, setup_logging
from pipewatch.metrics import (
    BottleneckDetector,
    MetricsStore,
    MetricType,
    ResourceSample,
    StaticResourceSampler,
)
from pipewatch.notifications import (
    ConsoleChannel,
    NotificationChannel,
    NotificationDispatcher,
    NotificationResult,
    create_channel,
)
from pipewatch.service import HealthCheck, PipewatchService
from pipewatch.tracing import SpanKind, SpanStatus, TraceTreeBuilder

__version__ = "0.1.0"

__all__ = [
    # Service
    "PipewatchService",
    "HealthCheck",
    "PipewatchConfig",
    "load_config",
    # Core components
    "CorrelationTracker",
    "StructuredEventLog",
    "Event",
    "LogLevel",
    "TraceTreeBuilder",
    "SpanKind",
    "SpanStatus",
    "ErrorFingerprintIndex",
    "ErrorSeverity",
    "compute_fingerprint",
    "MetricsStore",
    "MetricType",
    "BottleneckDetector",
    "ResourceSample",
    "StaticResourceSampler",
    # Alerting
    "AlertManager",
    "AlertRule",
    "AlertCondition",
    "AlertSeverity",
    "AlertStatus",
    "Alert",
    "Operator",
    "EscalationPolicy",
    "SuppressionPolicy",
    "NotificationDispatcher",
    "NotificationChannel",
    "NotificationResult",
    "ConsoleChannel",
    "create_channel",
    # Infrastructure
    "Clock",
    "SystemClock",
    "ManualClock",
    "PeriodicTask",
    "EventBus",
    "DomainEvent",
    "DomainEventType",
    "Subscription",
    "setup_logging",
    "configure_logging",
    "correlation_context",
    # Errors
    "PipewatchError",
    "ValidationError",
    "TransientIOError",
    "LogicError",
    "Outcome",
]
