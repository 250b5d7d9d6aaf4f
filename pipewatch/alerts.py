# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - ALERT MANAGER
# =============================================================================
"""
Alert Manager

Rule evaluation and the alert lifecycle state machine:

    pending -> firing -> {acknowledged, resolved, suppressed}
    acknowledged -> resolved
    suppressed -> firing | resolved

At most one non-resolved alert exists per rule id. A re-trigger updates
the open alert in place; a cleared condition resolves it, and the next
trigger opens a brand-new alert.

Features:
    - Threshold, equality, substring, regex and presence operators
    - Per-alert escalation timers cancelled atomically on leaving firing
    - Periodic escalation sweep guarded on escalation_level
    - Timed suppression with live re-check on expiry
    - Notifications dispatched off the caller's thread
    - Alert statistics and Prometheus counters

Usage:
    manager = AlertManager(AlertingConfig(), clock=clock, dispatcher=dispatcher,
                           metric_source=store.latest_value)
    manager.set_rule(AlertRule.from_dict({
        "id": "error-rate",
        "condition": {"metric": "error_rate", "operator": "gt", "threshold": 5},
        "severity": "error",
        "channels": ["console"],
    }))
    manager.evaluate(manager.get_rule("error-rate"), 7.0)
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Gauge

from pipewatch.bus import DomainEventType, EventBus
from pipewatch.clock import Clock, PeriodicTask, SystemClock, TimerHandle
from pipewatch.config import AlertingConfig
from pipewatch.exceptions import Outcome, ValidationError

if TYPE_CHECKING:
    from pipewatch.event_log import StructuredEventLog
    from pipewatch.notifications import NotificationDispatcher, NotificationResult


logger = logging.getLogger(__name__)

MetricSource = Callable[[str], Any]
DEFAULT_CHANNELS = ["console", "log"]


# =============================================================================
# ENUMS
# =============================================================================

class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(AlertSeverity).index(self)


class AlertStatus(str, Enum):
    PENDING = "pending"
    FIRING = "firing"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"


class Operator(str, Enum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"
    GTE = "gte"
    LTE = "lte"
    NEQ = "neq"
    CONTAINS = "contains"
    REGEX = "regex"
    ABSENT = "absent"
    PRESENT = "present"

    @property
    def is_numeric(self) -> bool:
        return self in (Operator.GT, Operator.LT, Operator.GTE, Operator.LTE)

    @property
    def is_presence(self) -> bool:
        return self in (Operator.ABSENT, Operator.PRESENT)


def _parse_enum(enum_cls, value: Any, what: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        raise ValidationError(f"Invalid {what}: {value!r}") from None


# =============================================================================
# RULES
# =============================================================================

@dataclass
class AlertCondition:
    metric: str
    operator: Operator
    threshold: Any = None
    time_window: float = 300.0
    evaluation_interval: float = 60.0

    def validate(self) -> None:
        if not self.metric:
            raise ValidationError("Alert condition requires a metric")
        if self.operator.is_numeric:
            if isinstance(self.threshold, bool):
                raise ValidationError(f"Threshold for {self.operator.value} must be numeric")
            try:
                float(self.threshold)
            except (TypeError, ValueError):
                raise ValidationError(
                    f"Threshold for {self.operator.value} must be numeric, got {self.threshold!r}"
                ) from None
        if self.operator is Operator.REGEX:
            try:
                re.compile(str(self.threshold))
            except re.error as e:
                raise ValidationError(f"Invalid regex threshold: {e}") from None
        if self.time_window <= 0 or self.evaluation_interval <= 0:
            raise ValidationError("time_window and evaluation_interval must be positive")

    def evaluate(self, value: Any) -> bool:
        op = self.operator
        if op is Operator.ABSENT:
            return value is None
        if op is Operator.PRESENT:
            return value is not None
        if value is None:
            return False
        if op is Operator.EQ:
            return value == self.threshold
        if op is Operator.NEQ:
            return value != self.threshold
        if op is Operator.CONTAINS:
            return str(self.threshold) in str(value)
        if op is Operator.REGEX:
            return re.search(str(self.threshold), str(value)) is not None
        try:
            number, threshold = float(value), float(self.threshold)
        except (TypeError, ValueError):
            return False
        if op is Operator.GT:
            return number > threshold
        if op is Operator.LT:
            return number < threshold
        if op is Operator.GTE:
            return number >= threshold
        return number <= threshold

    def describe(self) -> str:
        return f"Metric {self.metric} {self.operator.value} {self.threshold}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "operator": self.operator.value,
            "threshold": self.threshold,
            "time_window": self.time_window,
            "evaluation_interval": self.evaluation_interval,
        }


@dataclass
class EscalationPolicy:
    delay: float
    channels: List[str]
    severity: AlertSeverity

    def to_dict(self) -> Dict[str, Any]:
        return {"delay": self.delay, "channels": list(self.channels), "severity": self.severity.value}


@dataclass
class SuppressionPolicy:
    enabled: bool = False
    duration: float = 300.0


@dataclass
class AlertRule:
    id: str
    condition: AlertCondition
    severity: AlertSeverity
    channels: List[str] = field(default_factory=list)
    name: str = ""
    description: str = ""
    enabled: bool = True
    tags: List[str] = field(default_factory=list)
    runbook: Optional[str] = None
    escalation: Optional[EscalationPolicy] = None
    suppression: Optional[SuppressionPolicy] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlertRule":
        if not isinstance(data, dict):
            raise ValidationError(f"Alert rule must be a mapping, got {type(data).__name__}")
        raw = data.get("condition") or {}
        try:
            condition = AlertCondition(
                metric=raw.get("metric", ""),
                operator=_parse_enum(Operator, raw.get("operator", "gt"), "operator"),
                threshold=raw.get("threshold"),
                time_window=float(raw.get("time_window", 300)),
                evaluation_interval=float(raw.get("evaluation_interval", 60)),
            )
            escalation = None
            if data.get("escalation"):
                esc = data["escalation"]
                escalation = EscalationPolicy(
                    delay=float(esc.get("delay", 0)),
                    channels=list(esc.get("channels") or []),
                    severity=_parse_enum(AlertSeverity, esc.get("severity", "critical"), "severity"),
                )
            suppression = None
            if data.get("suppression"):
                sup = data["suppression"]
                suppression = SuppressionPolicy(
                    enabled=bool(sup.get("enabled", False)),
                    duration=float(sup.get("duration", 300)),
                )
        except (TypeError, ValueError, AttributeError) as e:
            raise ValidationError(f"Malformed alert rule {data.get('id')!r}: {e}") from None

        rule = cls(
            id=str(data.get("id") or ""),
            condition=condition,
            severity=_parse_enum(AlertSeverity, data.get("severity", "warning"), "severity"),
            channels=list(data.get("channels") or []),
            name=data.get("name", ""),
            description=data.get("description", ""),
            enabled=bool(data.get("enabled", True)),
            tags=list(data.get("tags") or []),
            runbook=data.get("runbook"),
            escalation=escalation,
            suppression=suppression,
        )
        rule.validate()
        return rule

    def validate(self) -> None:
        if not self.id:
            raise ValidationError("Alert rule requires an id")
        self.condition.validate()
        if not all(isinstance(c, str) for c in self.channels):
            raise ValidationError(f"Rule {self.id}: channels must be names")
        if self.escalation is not None and self.escalation.delay <= 0:
            raise ValidationError(f"Rule {self.id}: escalation delay must be positive")
        if self.suppression is not None and self.suppression.enabled and self.suppression.duration <= 0:
            raise ValidationError(f"Rule {self.id}: suppression duration must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "condition": self.condition.to_dict(),
            "severity": self.severity.value,
            "channels": list(self.channels),
            "tags": list(self.tags),
            "runbook": self.runbook,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "suppression": dataclasses.asdict(self.suppression) if self.suppression else None,
        }


DEFAULT_RULES: List[Dict[str, Any]] = [
    {
        "id": "high-cpu-usage",
        "name": "High CPU Usage",
        "description": "CPU usage is above 80%",
        "condition": {"metric": "system.cpu_percent", "operator": "gt", "threshold": 80,
                      "time_window": 300, "evaluation_interval": 60},
        "severity": "warning",
        "channels": ["console", "log"],
        "tags": ["system", "performance"],
    },
    {
        "id": "critical-cpu-usage",
        "name": "Critical CPU Usage",
        "description": "CPU usage is above 95%",
        "condition": {"metric": "system.cpu_percent", "operator": "gt", "threshold": 95,
                      "time_window": 60, "evaluation_interval": 30},
        "severity": "critical",
        "channels": ["console", "log"],
        "tags": ["system", "performance"],
        "escalation": {"delay": 300, "channels": ["webhook"], "severity": "critical"},
    },
    {
        "id": "high-error-rate",
        "name": "High Error Rate",
        "description": "Error rate is above 5%",
        "condition": {"metric": "error_rate", "operator": "gt", "threshold": 5,
                      "time_window": 300, "evaluation_interval": 60},
        "severity": "error",
        "channels": ["console", "log"],
        "tags": ["system", "errors"],
    },
]


# =============================================================================
# ALERTS
# =============================================================================

@dataclass
class Alert:
    id: str
    rule_id: str
    status: AlertStatus
    severity: AlertSeverity
    message: str
    value: Any
    threshold: Any
    created_at: datetime
    updated_at: datetime
    description: str = ""
    escalation_level: int = 0
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    suppression_expiry: Optional[datetime] = None
    suppression_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status is not AlertStatus.RESOLVED

    def copy(self) -> "Alert":
        return dataclasses.replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "status": self.status.value,
            "severity": self.severity.value,
            "message": self.message,
            "description": self.description,
            "value": self.value,
            "threshold": self.threshold,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "escalation_level": self.escalation_level,
            "acknowledged_at": iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "suppression_expiry": iso(self.suppression_expiry),
            "suppression_reason": self.suppression_reason,
            "metadata": dict(self.metadata),
        }


# =============================================================================
# ALERT MANAGER
# =============================================================================

class AlertManager:
    """Owns rules, alerts and escalation timers."""

    def __init__(
        self,
        config: Optional[AlertingConfig] = None,
        clock: Optional[Clock] = None,
        dispatcher: Optional["NotificationDispatcher"] = None,
        metric_source: Optional[MetricSource] = None,
        event_log: Optional["StructuredEventLog"] = None,
        bus: Optional[EventBus] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.config = config or AlertingConfig()
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher
        self.metric_source = metric_source
        self.event_log = event_log
        self.bus = bus

        self._rules: Dict[str, AlertRule] = {}
        self._evaluated: Set[str] = set()
        self._rules_lock = threading.Lock()

        self._alerts: Dict[str, Alert] = {}
        self._open_by_rule: Dict[str, str] = {}
        self._escalations: Dict[str, EscalationPolicy] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._manual_ids = itertools.count(1)

        self._notify_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="pipewatch-alerts")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        self._notification_counts = {"success": 0, "failure": 0}

        self._evaluate_task = PeriodicTask("alert-evaluate", self.config.evaluation_interval,
                                           self.evaluate_all, self.clock)
        self._escalation_task = PeriodicTask("alert-escalation", self.config.escalation_interval,
                                             self.check_escalation, self.clock)
        self._suppression_task = PeriodicTask("alert-suppression", self.config.suppression_interval,
                                              self.sweep_suppressions, self.clock)

        self.registry = registry or CollectorRegistry()
        self._created_total = Counter("pipewatch_alerts", "Alerts created", ["severity"],
                                      registry=self.registry)
        self._active_gauge = Gauge("pipewatch_alerts_active", "Non-resolved alerts",
                                   registry=self.registry)

        rules = (DEFAULT_RULES if self.config.include_default_rules else []) + list(self.config.rules)
        for raw in rules:
            self.set_rule(raw if isinstance(raw, AlertRule) else AlertRule.from_dict(raw))

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def set_rule(self, rule: AlertRule) -> None:
        rule.validate()
        with self._rules_lock:
            self._rules[rule.id] = rule
        logger.info(f"Alert rule set: {rule.id}")

    def remove_rule(self, rule_id: str) -> bool:
        with self._rules_lock:
            removed = self._rules.pop(rule_id, None)
            self._evaluated.discard(rule_id)
        if removed is None:
            return False
        with self._lock:
            alert_id = self._open_by_rule.get(rule_id)
        if alert_id:
            self.resolve(alert_id, by="rule-removed")
        logger.info(f"Alert rule removed: {rule_id}")
        return True

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        with self._rules_lock:
            return self._rules.get(rule_id)

    def rules(self) -> List[AlertRule]:
        with self._rules_lock:
            return list(self._rules.values())

    def rule_status(self, rule_id: str) -> Optional[AlertStatus]:
        """PENDING until the first evaluation, then the open alert's status or RESOLVED."""
        with self._rules_lock:
            if rule_id not in self._rules:
                return None
            evaluated = rule_id in self._evaluated
        with self._lock:
            alert_id = self._open_by_rule.get(rule_id)
            if alert_id:
                return self._alerts[alert_id].status
        return AlertStatus.RESOLVED if evaluated else AlertStatus.PENDING

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def evaluate(self, rule: AlertRule, current_value: Any) -> Optional[Alert]:
        """
        Apply one rule to a value.

        Returns a copy of the created, updated or resolved alert, or None
        when nothing changed.
        """
        if not rule.enabled:
            return None
        triggered = rule.condition.evaluate(current_value)
        now = self.clock.now()
        with self._rules_lock:
            self._evaluated.add(rule.id)

        with self._lock:
            existing = self._open_locked(rule.id)
            if triggered and existing is not None:
                existing.value = current_value
                existing.updated_at = now
                snapshot, event = existing.copy(), DomainEventType.ALERT_UPDATED
            elif triggered:
                alert = Alert(
                    id=f"alert-{rule.id}-{next(self._ids)}",
                    rule_id=rule.id,
                    status=AlertStatus.FIRING,
                    severity=rule.severity,
                    message=rule.description or rule.name or f"Alert on {rule.condition.metric}",
                    description=rule.condition.describe(),
                    value=current_value,
                    threshold=rule.condition.threshold,
                    created_at=now,
                    updated_at=now,
                    metadata={"rule_name": rule.name, "condition": rule.condition.to_dict(),
                              "tags": list(rule.tags), "runbook": rule.runbook},
                )
                self._store_locked(alert, rule.escalation)
                snapshot, event = alert.copy(), DomainEventType.ALERT_CREATED
            elif existing is not None and existing.status in (AlertStatus.FIRING, AlertStatus.ACKNOWLEDGED):
                self._resolve_locked(existing, now, "auto")
                snapshot, event = existing.copy(), DomainEventType.ALERT_RESOLVED
            else:
                return None

        if event is DomainEventType.ALERT_CREATED:
            self._created_total.labels(severity=snapshot.severity.value).inc()
            logger.warning(f"Alert created: {snapshot.id} [{snapshot.severity.value}] {snapshot.message}")
            self._record(snapshot, "warn", "Alert created")
            self._notify(snapshot, rule.channels, rule.tags)
        elif event is DomainEventType.ALERT_RESOLVED:
            logger.info(f"Alert resolved: {snapshot.id}")
            self._record(snapshot, "info", "Alert resolved")
        self._publish(event, snapshot)
        return snapshot

    def evaluate_all(self) -> List[Alert]:
        """Evaluate every enabled rule against the metric source."""
        changed: List[Alert] = []
        for rule in self.rules():
            if not rule.enabled:
                continue
            value = self._read_metric(rule.condition.metric)
            if value is None and not rule.condition.operator.is_presence:
                continue
            try:
                alert = self.evaluate(rule, value)
            except Exception as e:
                logger.error(f"Alert rule {rule.id} failed to evaluate: {e}")
                continue
            if alert is not None:
                changed.append(alert)
        return changed

    def _read_metric(self, metric: str) -> Any:
        if self.metric_source is None:
            return None
        try:
            return self.metric_source(metric)
        except Exception as e:
            logger.warning(f"Metric source failed for {metric}: {e}")
            return None

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def acknowledge(self, alert_id: str, by: str) -> Outcome:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                reason = "unknown alert"
            elif alert.status is not AlertStatus.FIRING:
                reason = f"cannot acknowledge alert in state {alert.status.value}"
            else:
                self._cancel_timer_locked(alert_id)
                alert.status = AlertStatus.ACKNOWLEDGED
                alert.acknowledged_at = alert.updated_at = self.clock.now()
                alert.acknowledged_by = by
                snapshot = alert.copy()
                reason = ""
        if reason:
            return self._reject(alert_id, reason)
        logger.info(f"Alert {alert_id} acknowledged by {by}")
        self._record(snapshot, "info", "Alert acknowledged")
        self._publish(DomainEventType.ALERT_ACKNOWLEDGED, snapshot)
        return Outcome.success(snapshot)

    def suppress(self, alert_id: str, duration_seconds: Optional[float] = None, reason: str = "") -> Outcome:
        """
        Silence a firing alert until the suppression expires.
        Without an explicit duration the rule's suppression policy applies.
        """
        if duration_seconds is None:
            rule = self._rule_for_alert(alert_id)
            if rule is None or rule.suppression is None or not rule.suppression.enabled:
                raise ValidationError(f"No suppression duration given for alert {alert_id}")
            duration_seconds = rule.suppression.duration
        if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, (int, float)) \
                or duration_seconds <= 0:
            raise ValidationError(f"Suppression duration must be positive, got {duration_seconds!r}")

        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                failure = "unknown alert"
            elif alert.status is not AlertStatus.FIRING:
                failure = f"cannot suppress alert in state {alert.status.value}"
            else:
                self._cancel_timer_locked(alert_id)
                now = self.clock.now()
                alert.status = AlertStatus.SUPPRESSED
                alert.suppression_expiry = now + timedelta(seconds=duration_seconds)
                alert.suppression_reason = reason
                alert.updated_at = now
                snapshot = alert.copy()
                failure = ""
        if failure:
            return self._reject(alert_id, failure)
        logger.info(f"Alert {alert_id} suppressed for {duration_seconds}s: {reason}")
        self._publish(DomainEventType.ALERT_SUPPRESSED, snapshot)
        return Outcome.success(snapshot)

    def resolve(self, alert_id: str, by: Optional[str] = None) -> Outcome:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                reason = "unknown alert"
            elif alert.status is AlertStatus.RESOLVED:
                reason = "already resolved"
            else:
                self._resolve_locked(alert, self.clock.now(), by)
                snapshot = alert.copy()
                reason = ""
        if reason:
            return self._reject(alert_id, reason)
        logger.info(f"Alert {alert_id} resolved by {by or 'system'}")
        self._record(snapshot, "info", "Alert resolved")
        self._publish(DomainEventType.ALERT_RESOLVED, snapshot)
        return Outcome.success(snapshot)

    def sweep_suppressions(self) -> List[Alert]:
        """Expired suppressions return to firing or resolve, depending on the live value."""
        now = self.clock.now()
        with self._lock:
            expired = [a.id for a in self._alerts.values()
                       if a.status is AlertStatus.SUPPRESSED
                       and a.suppression_expiry is not None and a.suppression_expiry <= now]
        changed: List[Alert] = []
        for alert_id in expired:
            rule = self._rule_for_alert(alert_id)
            if rule is None:
                still_active = False
            else:
                value = self._read_metric(rule.condition.metric)
                if value is None and not rule.condition.operator.is_presence:
                    still_active = True
                else:
                    still_active = rule.condition.evaluate(value)

            with self._lock:
                alert = self._alerts.get(alert_id)
                if alert is None or alert.status is not AlertStatus.SUPPRESSED:
                    continue
                alert.suppression_expiry = None
                if still_active:
                    alert.status = AlertStatus.FIRING
                    alert.updated_at = now
                    event = DomainEventType.ALERT_UNSUPPRESSED
                else:
                    self._resolve_locked(alert, now, "suppression-expired")
                    event = DomainEventType.ALERT_RESOLVED
                snapshot = alert.copy()
            logger.info(f"Suppression expired for {alert_id}: {snapshot.status.value}")
            self._publish(event, snapshot)
            changed.append(snapshot)
        return changed

    # -------------------------------------------------------------------------
    # Escalation
    # -------------------------------------------------------------------------

    def check_escalation(self) -> List[Alert]:
        now = self.clock.now()
        with self._lock:
            due = [
                a.id for a in self._alerts.values()
                if a.status is AlertStatus.FIRING and a.escalation_level == 0
                and a.id in self._escalations
                and now - a.created_at >= timedelta(seconds=self._escalations[a.id].delay)
            ]
        escalated = []
        for alert_id in due:
            alert = self._escalate(alert_id)
            if alert is not None:
                escalated.append(alert)
        return escalated

    def _escalate(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            policy = self._escalations.get(alert_id)
            if alert is None or policy is None:
                return None
            if alert.status is not AlertStatus.FIRING or alert.escalation_level != 0:
                return None
            self._timers.pop(alert_id, None)
            alert.escalation_level = 1
            alert.severity = policy.severity
            alert.message = f"[ESCALATED] {alert.message}"
            alert.updated_at = self.clock.now()
            snapshot = alert.copy()

        logger.warning(f"Alert escalated: {alert_id} -> {policy.severity.value}")
        self._record(snapshot, "warn", "Alert escalated")
        self._publish(DomainEventType.ALERT_ESCALATED, snapshot)
        rule = self.get_rule(snapshot.rule_id)
        self._notify(snapshot, policy.channels, rule.tags if rule else ())
        return snapshot

    # -------------------------------------------------------------------------
    # Manual alerts and queries
    # -------------------------------------------------------------------------

    def create_manual_alert(
        self,
        rule_id: str,
        severity: Any,
        message: str,
        value: Any = None,
    ) -> Alert:
        """Raise an alert by hand. An open alert for the same rule id is updated instead."""
        severity = _parse_enum(AlertSeverity, severity, "severity")
        now = self.clock.now()
        rule = self.get_rule(rule_id)
        with self._lock:
            existing = self._open_locked(rule_id)
            if existing is not None:
                existing.value = value
                existing.message = message
                existing.updated_at = now
                snapshot, created = existing.copy(), False
            else:
                alert = Alert(
                    id=f"manual-{next(self._manual_ids)}",
                    rule_id=rule_id,
                    status=AlertStatus.FIRING,
                    severity=severity,
                    message=message,
                    description="Manual alert",
                    value=value,
                    threshold=None,
                    created_at=now,
                    updated_at=now,
                    metadata={"manual": True},
                )
                self._store_locked(alert, rule.escalation if rule else None)
                snapshot, created = alert.copy(), True

        if not created:
            self._publish(DomainEventType.ALERT_UPDATED, snapshot)
            return snapshot
        self._created_total.labels(severity=severity.value).inc()
        logger.warning(f"Manual alert created: {snapshot.id} {message}")
        self._record(snapshot, "warn", "Manual alert created")
        self._publish(DomainEventType.ALERT_CREATED, snapshot)
        self._notify(snapshot, rule.channels if rule else DEFAULT_CHANNELS, rule.tags if rule else ())
        return snapshot

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.copy() if alert else None

    def active_alerts(self) -> List[Alert]:
        with self._lock:
            alerts = [a.copy() for a in self._alerts.values() if a.is_open]
        return sorted(alerts, key=lambda a: (-a.severity.rank, a.created_at))

    def alerts(self, status: Optional[Any] = None) -> List[Alert]:
        wanted = _parse_enum(AlertStatus, status, "status") if status is not None else None
        with self._lock:
            return [a.copy() for a in self._alerts.values() if wanted is None or a.status is wanted]

    def active_count(self) -> int:
        with self._lock:
            return len(self._open_by_rule)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            alerts = list(self._alerts.values())
            by_severity = {s.value: 0 for s in AlertSeverity}
            by_status = {s.value: 0 for s in AlertStatus}
            durations = []
            escalated = 0
            for alert in alerts:
                by_severity[alert.severity.value] += 1
                by_status[alert.status.value] += 1
                if alert.resolved_at is not None:
                    durations.append((alert.resolved_at - alert.created_at).total_seconds())
                if alert.escalation_level > 0:
                    escalated += 1
        with self._pending_lock:
            notifications = dict(self._notification_counts)
        return {
            "total_alerts": len(alerts),
            "active_alerts": len(alerts) - by_status[AlertStatus.RESOLVED.value],
            "by_severity": by_severity,
            "by_status": by_status,
            "average_resolution_seconds": sum(durations) / len(durations) if durations else 0.0,
            "escalation_rate": escalated / len(alerts) if alerts else 0.0,
            "notifications": notifications,
            "rules": len(self.rules()),
        }

    # -------------------------------------------------------------------------
    # Notification fan-out
    # -------------------------------------------------------------------------

    def _notify(self, alert: Alert, channels: Iterable[str], tags: Iterable[str]) -> None:
        channels = list(channels)
        if self.dispatcher is None or not channels:
            return
        try:
            future = self._notify_executor.submit(self.dispatcher.dispatch, alert, channels, list(tags))
        except RuntimeError:
            logger.warning(f"Notification executor closed, dropping notifications for {alert.id}")
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._notification_done)

    def _notification_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        error = future.exception()
        if error is not None:
            logger.error(f"Notification dispatch failed: {error}")
            return
        results: List["NotificationResult"] = future.result()
        with self._pending_lock:
            for result in results:
                self._notification_counts["success" if result.success else "failure"] += 1

    def wait_for_notifications(self, timeout: Optional[float] = None) -> bool:
        """Block until in-flight notifications finish. False on timeout."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            for alert_id, alert in self._alerts.items():
                if (alert.status is AlertStatus.FIRING and alert.escalation_level == 0
                        and alert_id in self._escalations and alert_id not in self._timers):
                    self._arm_timer_locked(alert)
        self._evaluate_task.start()
        self._escalation_task.start()
        self._suppression_task.start()
        logger.info("Alert manager started")

    def stop(self) -> None:
        self._evaluate_task.stop()
        self._escalation_task.stop()
        self._suppression_task.stop()
        with self._lock:
            for handle in self._timers.values():
                handle.cancel()
            self._timers.clear()
        logger.info("Alert manager stopped")

    @property
    def tasks(self) -> List[PeriodicTask]:
        return [self._evaluate_task, self._escalation_task, self._suppression_task]

    def update_config(self, **changes: Any) -> None:
        for key in changes:
            if not hasattr(self.config, key):
                raise ValidationError(f"Unknown alerting option: {key}")
        intervals = {
            "evaluation_interval": self._evaluate_task,
            "escalation_interval": self._escalation_task,
            "suppression_interval": self._suppression_task,
        }
        for key, task in intervals.items():
            if key in changes:
                task.reschedule(float(changes[key]))
        for key, value in changes.items():
            setattr(self.config, key, value)

    def destroy(self) -> None:
        self.stop()
        self._notify_executor.shutdown(wait=True)
        with self._lock:
            self._alerts.clear()
            self._open_by_rule.clear()
            self._escalations.clear()
        with self._rules_lock:
            self._rules.clear()
            self._evaluated.clear()
        self._active_gauge.set(0)

    # -------------------------------------------------------------------------
    # Internals (callers hold self._lock)
    # -------------------------------------------------------------------------

    def _open_locked(self, rule_id: str) -> Optional[Alert]:
        alert_id = self._open_by_rule.get(rule_id)
        return self._alerts.get(alert_id) if alert_id else None

    def _store_locked(self, alert: Alert, escalation: Optional[EscalationPolicy]) -> None:
        self._alerts[alert.id] = alert
        self._open_by_rule[alert.rule_id] = alert.id
        if escalation is not None:
            self._escalations[alert.id] = escalation
            self._arm_timer_locked(alert)
        self._active_gauge.set(len(self._open_by_rule))

    def _arm_timer_locked(self, alert: Alert) -> None:
        policy = self._escalations[alert.id]
        elapsed = (self.clock.now() - alert.created_at).total_seconds()
        delay = max(policy.delay - elapsed, 0.0)
        self._timers[alert.id] = self.clock.call_later(delay, lambda: self._escalate(alert.id))

    def _cancel_timer_locked(self, alert_id: str) -> None:
        handle = self._timers.pop(alert_id, None)
        if handle is not None:
            handle.cancel()

    def _resolve_locked(self, alert: Alert, now: datetime, by: Optional[str]) -> None:
        self._cancel_timer_locked(alert.id)
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = alert.updated_at = now
        alert.resolved_by = by
        alert.suppression_expiry = None
        if self._open_by_rule.get(alert.rule_id) == alert.id:
            del self._open_by_rule[alert.rule_id]
        self._active_gauge.set(len(self._open_by_rule))

    def _rule_for_alert(self, alert_id: str) -> Optional[AlertRule]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            rule_id = alert.rule_id if alert else None
        return self.get_rule(rule_id) if rule_id else None

    def _reject(self, alert_id: str, reason: str) -> Outcome:
        logger.warning(f"Alert transition rejected for {alert_id}: {reason}")
        if self.event_log:
            self.event_log.warn(
                f"Alert transition rejected: {reason}",
                operation="alert",
                tags=["logic-error"],
                metadata={"alert_id": alert_id},
            )
        return Outcome.failure(reason)

    def _record(self, alert: Alert, level: str, message: str) -> None:
        if self.event_log:
            self.event_log.log(
                level,
                f"{message}: {alert.message}",
                operation="alert",
                tags=["alert", alert.severity.value],
                metadata={"alert_id": alert.id, "rule_id": alert.rule_id, "value": alert.value},
            )

    def _publish(self, event_type: DomainEventType, alert: Alert) -> None:
        if self.bus:
            self.bus.publish(event_type, alert=alert.to_dict())


__all__ = [
    "AlertSeverity",
    "AlertStatus",
    "Operator",
    "AlertCondition",
    "EscalationPolicy",
    "SuppressionPolicy",
    "AlertRule",
    "DEFAULT_RULES",
    "Alert",
    "AlertManager",
]
