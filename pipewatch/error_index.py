# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - ERROR FINGERPRINT INDEX
# =============================================================================
"""
Error Fingerprint Index

Deduplicates recurring errors by fingerprint and keeps one ErrorRecord
per distinct error, with occurrence counts, affected correlation ids,
keyword-based severity/category classification, patterns and analytics.

Features:
    - sha256 fingerprint of name, message and first N stack lines
    - Keyword classifiers for severity and category, applied once
    - Resolution workflow (open, investigating, resolved, ignored)
    - Retention sweep with manual hold
    - Patterns with suggestions and a simple occurrence trend
    - Analytics: by severity/category/service, 7 day counts, resolution metrics

Usage:
    index = ErrorFingerprintIndex(ErrorTrackingConfig(), clock=clock)
    error_id = index.track(exc, {"correlation_id": cid, "service": "ingest"})
    index.resolve(error_id, "fixed retry policy", "alice")
"""

from __future__ import annotations

import copy
import hashlib
import logging
import threading
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union, TYPE_CHECKING

from pipewatch.bus import DomainEventType, EventBus
from pipewatch.clock import Clock, SystemClock
from pipewatch.config import ErrorTrackingConfig
from pipewatch.event_log import ErrorInfo
from pipewatch.exceptions import Outcome, ValidationError

if TYPE_CHECKING:
    from pipewatch.event_log import StructuredEventLog


logger = logging.getLogger(__name__)

MAX_OCCURRENCE_TIMESTAMPS = 1000


# =============================================================================
# ENUMS
# =============================================================================

class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    FATAL = "fatal"

    @property
    def rank(self) -> int:
        return list(ErrorSeverity).index(self)


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NETWORK = "network"
    DATABASE = "database"
    FILE_SYSTEM = "file-system"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate-limit"
    DEPENDENCY = "dependency"
    BUSINESS_LOGIC = "business-logic"
    UNKNOWN = "unknown"


class ResolutionState(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    IGNORED = "ignored"


# =============================================================================
# CLASSIFICATION
# =============================================================================

def compute_fingerprint(name: str, message: str, stack: str = "", frames: int = 5) -> str:
    """
    sha256 of ``name:message:first N stack lines``, truncated to 16 hex chars.

    Stacks from ErrorInfo.from_exception list the raise site first, so the
    leading lines are the exception line and the innermost frames.
    """
    relevant = "\n".join((stack or "").split("\n")[:frames])
    data = f"{name}:{message}:{relevant}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


def classify_severity(name: str, message: str = "") -> ErrorSeverity:
    lowered = name.lower()
    if "fatal" in lowered or "critical" in lowered:
        return ErrorSeverity.CRITICAL
    if any(k in lowered for k in ("timeout", "memory", "connection", "permission")):
        return ErrorSeverity.HIGH
    if any(k in lowered for k in ("validation", "format", "not found", "notfound", "unauthorized")):
        return ErrorSeverity.MEDIUM
    return ErrorSeverity.LOW


_CATEGORY_KEYWORDS: List[Tuple[ErrorCategory, Tuple[str, ...]]] = [
    (ErrorCategory.VALIDATION, ("validation", "invalid")),
    (ErrorCategory.AUTHENTICATION, ("auth", "login", "token", "credential")),
    (ErrorCategory.AUTHORIZATION, ("permission", "forbidden", "unauthorized", "access")),
    (ErrorCategory.NETWORK, ("network", "connection", "timeout", "fetch")),
    (ErrorCategory.DATABASE, ("database", "sql", "query", "table")),
    (ErrorCategory.FILE_SYSTEM, ("file", "path", "directory")),
    (ErrorCategory.CONFIGURATION, ("config", "setting", "environment", "variable")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "throttle", "quota", "limit")),
    (ErrorCategory.DEPENDENCY, ("dependency", "service", "external", "api")),
]


def classify_category(name: str, message: str) -> ErrorCategory:
    lowered = message.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(k in lowered for k in keywords):
            return category
    return ErrorCategory.UNKNOWN


SUGGESTIONS: Dict[ErrorCategory, List[str]] = {
    ErrorCategory.VALIDATION: ["Review input validation logic",
                               "Add explicit handling for invalid inputs"],
    ErrorCategory.AUTHENTICATION: ["Check authentication token validity",
                                   "Verify credentials"],
    ErrorCategory.NETWORK: ["Check network connectivity",
                            "Verify external service availability"],
    ErrorCategory.DATABASE: ["Check database connection",
                             "Review queries for syntax errors"],
    ErrorCategory.FILE_SYSTEM: ["Check file permissions",
                                "Verify the file path exists"],
    ErrorCategory.CONFIGURATION: ["Review configuration settings",
                                  "Check environment variables"],
}

DEFAULT_SUGGESTIONS = ["Review error logs for patterns",
                       "Consider adding more specific error handling"]


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class ErrorRecord:
    id: str
    fingerprint: str
    error: ErrorInfo
    severity: ErrorSeverity
    category: ErrorCategory
    first_occurrence: datetime
    last_occurrence: datetime
    occurrence_count: int = 1
    affected_correlation_ids: Set[str] = field(default_factory=set)
    affected_users: Set[str] = field(default_factory=set)
    affected_services: Set[str] = field(default_factory=set)
    tags: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    state: ResolutionState = ResolutionState.OPEN
    resolution_note: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    hold: bool = False
    occurrences: Deque[datetime] = field(
        default_factory=lambda: deque(maxlen=MAX_OCCURRENCE_TIMESTAMPS)
    )

    @property
    def stack_digest(self) -> str:
        return hashlib.sha256(self.error.stack.encode("utf-8")).hexdigest()[:16] if self.error.stack else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "error": {"name": self.error.name, "message": self.error.message,
                      "stack_digest": self.stack_digest},
            "severity": self.severity.value,
            "category": self.category.value,
            "first_occurrence": self.first_occurrence.isoformat(),
            "last_occurrence": self.last_occurrence.isoformat(),
            "occurrence_count": self.occurrence_count,
            "affected_correlation_ids": sorted(self.affected_correlation_ids),
            "affected_users": sorted(self.affected_users),
            "affected_services": sorted(self.affected_services),
            "tags": list(self.tags),
            "state": self.state.value,
            "resolution_note": self.resolution_note,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "hold": self.hold,
        }


@dataclass(frozen=True)
class ErrorPattern:
    fingerprint: str
    pattern: str
    frequency: int
    first_seen: datetime
    last_seen: datetime
    severity: ErrorSeverity
    category: ErrorCategory
    trend: str
    suggestions: List[str]


def _copy_record(record: ErrorRecord) -> ErrorRecord:
    snapshot = copy.copy(record)
    snapshot.affected_correlation_ids = set(record.affected_correlation_ids)
    snapshot.affected_users = set(record.affected_users)
    snapshot.affected_services = set(record.affected_services)
    snapshot.tags = list(record.tags)
    snapshot.occurrences = deque(record.occurrences, maxlen=MAX_OCCURRENCE_TIMESTAMPS)
    return snapshot


ErrorInput = Union[BaseException, ErrorInfo, Tuple[str, ...]]


def _to_error_info(error: ErrorInput) -> ErrorInfo:
    if isinstance(error, ErrorInfo):
        return error
    if isinstance(error, BaseException):
        return ErrorInfo.from_exception(error)
    if isinstance(error, tuple) and 2 <= len(error) <= 3 and all(isinstance(p, str) for p in error):
        return ErrorInfo(*error)
    raise ValidationError(f"Cannot track error of type {type(error).__name__}")


# =============================================================================
# INDEX
# =============================================================================

class ErrorFingerprintIndex:
    """Fingerprint-keyed store of ErrorRecords."""

    def __init__(
        self,
        config: Optional[ErrorTrackingConfig] = None,
        clock: Optional[Clock] = None,
        event_log: Optional["StructuredEventLog"] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config or ErrorTrackingConfig()
        self.clock = clock or SystemClock()
        self.event_log = event_log
        self.bus = bus
        self._records: Dict[str, ErrorRecord] = {}
        self._by_fingerprint: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._notify_severity = ErrorSeverity(self.config.notification_severity)

    # -------------------------------------------------------------------------
    # Tracking
    # -------------------------------------------------------------------------

    def track(
        self,
        error: ErrorInput,
        context: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        severity: Union[ErrorSeverity, str, None] = None,
        emit: bool = True,
    ) -> str:
        """
        Record one occurrence. Returns the id of the (possibly existing) record.
        With emit=False no error event is logged, for callers that already logged one.
        """
        info = _to_error_info(error)
        context = dict(context or {})
        fingerprint = compute_fingerprint(info.name, info.message, info.stack, self.config.stack_frames)
        now = self.clock.now()
        correlation_id = context.get("correlation_id")
        user_id = context.get("user_id")
        service = context.get("service")

        with self._lock:
            record_id = self._by_fingerprint.get(fingerprint)
            record = self._records.get(record_id) if record_id else None
            created = record is None or record.state is ResolutionState.RESOLVED
            if created:
                sev = ErrorSeverity(severity) if severity else classify_severity(info.name, info.message)
                record = ErrorRecord(
                    id=uuid.uuid4().hex,
                    fingerprint=fingerprint,
                    error=info,
                    severity=sev,
                    category=classify_category(info.name, info.message),
                    first_occurrence=now,
                    last_occurrence=now,
                    tags=self._tags(info, context, sev),
                    context=context,
                    metadata=dict(metadata or {}),
                )
                self._records[record.id] = record
                self._by_fingerprint[fingerprint] = record.id
            else:
                record.occurrence_count += 1
                record.last_occurrence = now
            if correlation_id:
                record.affected_correlation_ids.add(correlation_id)
            if user_id:
                record.affected_users.add(str(user_id))
            if service:
                record.affected_services.add(service)
            record.occurrences.append(now)
            count = record.occurrence_count
            snapshot = (record.id, record.severity, record.category)

        record_id, sev, category = snapshot
        threshold_hit = (sev.rank >= self._notify_severity.rank
                         and count == self.config.notification_frequency)
        if self.event_log and emit:
            self.event_log.error(
                f"{info.name}: {info.message}",
                correlation_id=correlation_id,
                service=service,
                operation=context.get("operation"),
                tags=["error-tracked", sev.value, category.value],
                metadata={"error_id": record_id, "fingerprint": fingerprint,
                          "occurrence_count": count, "type": "error"},
                error=info,
            )
        if self.bus:
            self.bus.publish(DomainEventType.ERROR_TRACKED, error_id=record_id,
                             fingerprint=fingerprint, occurrence_count=count, new=created,
                             severity=sev.value, correlation_id=correlation_id)
            if threshold_hit:
                self.bus.publish(DomainEventType.ERROR_THRESHOLD_EXCEEDED, error_id=record_id,
                                 fingerprint=fingerprint, occurrence_count=count)
        if threshold_hit:
            logger.warning(f"Error {fingerprint} reached {count} occurrences")
        return record_id

    @staticmethod
    def _tags(info: ErrorInfo, context: Dict[str, Any], severity: ErrorSeverity) -> List[str]:
        tags = [severity.value, info.name.lower()]
        for key, prefix in (("service", "service"), ("tool", "tool"),
                            ("stage", "stage"), ("environment", "env")):
            if context.get(key):
                tags.append(f"{prefix}:{context[key]}")
        return tags

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve(self, error_id: str, note: str = "", resolver: str = "") -> Outcome:
        """Mark resolved. A second call is a no-op reporting already resolved."""
        with self._lock:
            record = self._records.get(error_id)
            if record is None:
                reason = "unknown error"
            elif record.state is ResolutionState.RESOLVED:
                reason = "already resolved"
            else:
                record.state = ResolutionState.RESOLVED
                record.resolution_note = note
                record.resolved_by = resolver
                record.resolved_at = self.clock.now()
                reason = ""

        if reason:
            self._warn(f"resolve ignored for {error_id}: {reason}", error_id)
            return Outcome.failure(reason, error_id)

        logger.info(f"Error {error_id} resolved by {resolver or 'unknown'}")
        if self.bus:
            self.bus.publish(DomainEventType.ERROR_RESOLVED, error_id=error_id, resolver=resolver)
        return Outcome.success(error_id)

    def set_state(self, error_id: str, state: Union[ResolutionState, str]) -> Outcome:
        """Move to investigating/ignored/open. Use resolve() for resolved."""
        try:
            state = ResolutionState(state)
        except ValueError:
            raise ValidationError(f"Unknown resolution state: {state!r}")
        if state is ResolutionState.RESOLVED:
            return self.resolve(error_id)
        with self._lock:
            record = self._records.get(error_id)
            if record is None:
                reason = "unknown error"
            elif record.state is ResolutionState.RESOLVED:
                reason = "already resolved"
            else:
                record.state = state
                return Outcome.success(error_id)
        self._warn(f"set_state ignored for {error_id}: {reason}", error_id)
        return Outcome.failure(reason, error_id)

    def hold(self, error_id: str, on: bool = True) -> Outcome:
        """Manual hold exempts a record from the retention sweep."""
        with self._lock:
            record = self._records.get(error_id)
            if record is None:
                return Outcome.failure("unknown error", error_id)
            record.hold = on
        return Outcome.success(error_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, error_id: str) -> Optional[ErrorRecord]:
        with self._lock:
            record = self._records.get(error_id)
            return _copy_record(record) if record else None

    def get_by_fingerprint(self, fingerprint: str) -> Optional[ErrorRecord]:
        with self._lock:
            record_id = self._by_fingerprint.get(fingerprint)
        return self.get(record_id) if record_id else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def search(
        self,
        severity: Union[ErrorSeverity, str, None] = None,
        category: Union[ErrorCategory, str, None] = None,
        service: Optional[str] = None,
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tags: Optional[Iterable[str]] = None,
        state: Union[ResolutionState, str, None] = None,
        limit: Optional[int] = None,
    ) -> List[ErrorRecord]:
        """Records matching every filter, most recent occurrence first."""
        severity = ErrorSeverity(severity) if severity else None
        category = ErrorCategory(category) if category else None
        state = ResolutionState(state) if state else None
        wanted_tags = set(tags) if tags else None

        with self._lock:
            records = [_copy_record(r) for r in self._records.values()]

        results = []
        for r in records:
            if severity and r.severity is not severity:
                continue
            if category and r.category is not category:
                continue
            if state and r.state is not state:
                continue
            if service and service not in r.affected_services:
                continue
            if correlation_id and correlation_id not in r.affected_correlation_ids:
                continue
            if user_id and user_id not in r.affected_users:
                continue
            if start and r.last_occurrence < start:
                continue
            if end and r.first_occurrence > end:
                continue
            if wanted_tags and not wanted_tags.intersection(r.tags):
                continue
            results.append(r)

        results.sort(key=lambda r: r.last_occurrence, reverse=True)
        return results[:limit] if limit else results

    def occurrences_since(self, seconds: float) -> int:
        """Total occurrences across all records within the last N seconds."""
        cutoff = self.clock.now() - timedelta(seconds=seconds)
        with self._lock:
            return sum(
                sum(1 for ts in r.occurrences if ts >= cutoff)
                for r in self._records.values()
            )

    def open_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._records.values()
                       if r.state in (ResolutionState.OPEN, ResolutionState.INVESTIGATING))

    def patterns(self, limit: Optional[int] = None) -> List[ErrorPattern]:
        """Patterns by frequency, with a last-hour vs previous-hour trend."""
        now = self.clock.now()
        hour_ago = now - timedelta(hours=1)
        two_hours_ago = now - timedelta(hours=2)
        with self._lock:
            records = list(self._records.values())
            patterns = []
            for r in records:
                recent = sum(1 for ts in r.occurrences if ts >= hour_ago)
                previous = sum(1 for ts in r.occurrences if two_hours_ago <= ts < hour_ago)
                if recent > previous:
                    trend = "increasing"
                elif recent < previous:
                    trend = "decreasing"
                else:
                    trend = "stable"
                patterns.append(ErrorPattern(
                    fingerprint=r.fingerprint,
                    pattern=f"{r.error.name}: {r.error.message}",
                    frequency=r.occurrence_count,
                    first_seen=r.first_occurrence,
                    last_seen=r.last_occurrence,
                    severity=r.severity,
                    category=r.category,
                    trend=trend,
                    suggestions=list(SUGGESTIONS.get(r.category, DEFAULT_SUGGESTIONS)),
                ))
        patterns.sort(key=lambda p: p.frequency, reverse=True)
        return patterns[:limit] if limit else patterns

    def analytics(self) -> Dict[str, Any]:
        """Aggregate view over retained records."""
        now = self.clock.now()
        with self._lock:
            records = [_copy_record(r) for r in self._records.values()]

        by_severity = Counter(r.severity.value for r in records)
        by_category = Counter(r.category.value for r in records)
        by_service: Counter = Counter()
        users: Set[str] = set()
        services: Set[str] = set()
        for r in records:
            for s in r.affected_services or {"unknown"}:
                by_service[s] += r.occurrence_count
            users |= r.affected_users
            services |= r.affected_services

        daily = []
        for days_back in range(6, -1, -1):
            day = (now - timedelta(days=days_back)).date()
            day_severities = [
                r.severity.value for r in records for ts in r.occurrences if ts.date() == day
            ]
            common = Counter(day_severities).most_common(1)
            daily.append({
                "date": day.isoformat(),
                "count": len(day_severities),
                "severity": common[0][0] if common else ErrorSeverity.LOW.value,
            })

        resolved = [r for r in records if r.state is ResolutionState.RESOLVED and r.resolved_at]
        avg_resolution = (
            sum((r.resolved_at - r.first_occurrence).total_seconds() for r in resolved) / len(resolved)
            if resolved else 0.0
        )

        return {
            "total_records": len(records),
            "total_occurrences": sum(r.occurrence_count for r in records),
            "by_severity": dict(by_severity),
            "by_category": dict(by_category),
            "by_service": dict(by_service),
            "daily": daily,
            "top_patterns": [
                {"pattern": p.pattern, "frequency": p.frequency, "trend": p.trend}
                for p in self.patterns(limit=10)
            ],
            "resolution": {
                "average_resolution_seconds": avg_resolution,
                "resolution_rate": len(resolved) / len(records) if records else 0.0,
            },
            "affected_users": len(users),
            "affected_services": sorted(services),
        }

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def sweep(self) -> List[str]:
        """
        Evict records whose last occurrence is past retention and that are
        not on hold. The fingerprint mapping goes with them, so a later
        recurrence starts a new record.
        """
        cutoff = self.clock.now() - timedelta(days=self.config.retention_days)
        evicted = []
        with self._lock:
            for record_id, record in list(self._records.items()):
                if record.hold or record.last_occurrence >= cutoff:
                    continue
                evicted.append(record_id)
                self._drop_locked(record)

            overflow = len(self._records) - self.config.max_records
            if overflow > 0:
                candidates = sorted(
                    (r for r in self._records.values() if not r.hold),
                    key=lambda r: r.last_occurrence,
                )[:overflow]
                for record in candidates:
                    evicted.append(record.id)
                    self._drop_locked(record)

        if evicted:
            logger.info(f"Evicted {len(evicted)} error records")
        return evicted

    def _drop_locked(self, record: ErrorRecord) -> None:
        self._records.pop(record.id, None)
        if self._by_fingerprint.get(record.fingerprint) == record.id:
            del self._by_fingerprint[record.fingerprint]

    def destroy(self) -> None:
        with self._lock:
            self._records.clear()
            self._by_fingerprint.clear()

    def _warn(self, message: str, error_id: str) -> None:
        logger.warning(message)
        if self.event_log:
            self.event_log.warn(message, operation="error-index", tags=["logic-error"],
                                metadata={"error_id": error_id})


__all__ = [
    "ErrorSeverity",
    "ErrorCategory",
    "ResolutionState",
    "compute_fingerprint",
    "classify_severity",
    "classify_category",
    "SUGGESTIONS",
    "ErrorRecord",
    "ErrorPattern",
    "ErrorFingerprintIndex",
]
