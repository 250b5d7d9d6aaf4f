# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - STRUCTURED EVENT LOG
# =============================================================================
"""
Structured Event Log

Buffered, correlation-aware event log. Producers call emit()/log() and
never block on I/O: events go into an in-memory buffer that is flushed
to the sinks periodically, or in the background once the buffer fills.

Features:
    - Five severity levels with threshold filtering
    - Correlation id taken from the argument, the log context or a new id
    - Daily NDJSON file sink and optional remote HTTP sink
    - Failed flushes put the batch back in front of newer events
    - Events that cannot be serialized go to a separate malformed log
    - Audit, pipeline, service and performance convenience emitters
    - Query over retained history in emission order

Usage:
    event_log = StructuredEventLog(LoggingConfig(), clock=clock, tracker=tracker)
    event_log.start()
    event_log.info("stage finished", correlation_id=cid, operation="fetch")
    event_log.query(correlation_id=cid)
"""

from __future__ import annotations

import json
import logging
import threading
import traceback
import uuid
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import requests
from prometheus_client import CollectorRegistry, Counter

from pipewatch.bus import DomainEventType, EventBus
from pipewatch.clock import Clock, PeriodicTask, SystemClock
from pipewatch.config import LoggingConfig
from pipewatch.correlation import CorrelationTracker
from pipewatch.exceptions import TransientIOError, ValidationError
from pipewatch.logger import current_correlation_id, get_logger
from pipewatch.transport import create_session


logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    @classmethod
    def parse(cls, value: Union[str, "LogLevel"]) -> "LogLevel":
        if isinstance(value, LogLevel):
            return value
        if not isinstance(value, str):
            raise ValidationError(f"Log level must be a string, got {type(value).__name__}")
        name = value.strip().lower()
        name = {"warning": "warn", "critical": "fatal"}.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise ValidationError(f"Unknown log level: {value}")


_LEVEL_ORDER = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR, LogLevel.FATAL]


@dataclass(frozen=True)
class ErrorInfo:
    """Serializable description of an exception."""
    name: str
    message: str
    stack: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        """
        Describe *exc*. The stack starts with the exception line, then one line
        per frame from the raise site outwards, so its leading lines locate
        where the error came from.
        """
        name, message = type(exc).__name__, str(exc)
        header = f"{name}: {message}" if message else name
        frames = reversed(traceback.extract_tb(exc.__traceback__))
        lines = [header] + [f'  File "{f.filename}", line {f.lineno}, in {f.name}' for f in frames]
        return cls(name=name, message=message, stack="\n".join(lines))

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "message": self.message, "stack": self.stack}


@dataclass(frozen=True)
class Event:
    """One structured log record. Immutable once emitted."""
    level: LogLevel
    message: str
    correlation_id: str
    timestamp: datetime
    service: str = ""
    operation: str = ""
    tags: FrozenSet[str] = frozenset()
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorInfo] = None
    id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "service": self.service,
            "operation": self.operation,
            "tags": sorted(self.tags),
            "metadata": self.metadata,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class FlushResult:
    flushed: int = 0
    malformed: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# SERIALIZATION
# =============================================================================

def _strict_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if isinstance(obj, Path):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def serialize_event(event: Event) -> str:
    """One NDJSON line. Raises TypeError/ValueError for unserializable events."""
    return json.dumps(event.to_dict(), default=_strict_default, allow_nan=False)


# =============================================================================
# SINKS
# =============================================================================

class EventSink(ABC):
    """Destination for flushed NDJSON lines."""

    name = "sink"

    @abstractmethod
    def write(self, lines: List[str]) -> None:
        """Write lines or raise TransientIOError."""
        pass

    def close(self) -> None:
        pass


class DailyFileSink(EventSink):
    """Appends to ``<prefix>-YYYY-MM-DD.jsonl``, one file per UTC day."""

    name = "file"

    def __init__(self, directory: Union[str, Path], prefix: str, clock: Clock, max_files: int = 0):
        self.directory = Path(directory)
        self.prefix = prefix
        self.clock = clock
        self.max_files = max_files
        self._lock = threading.Lock()

    def path_for(self, when: datetime) -> Path:
        return self.directory / f"{self.prefix}-{when:%Y-%m-%d}.jsonl"

    def write(self, lines: List[str]) -> None:
        if not lines:
            return
        path = self.path_for(self.clock.now())
        try:
            with self._lock:
                self.directory.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write("\n".join(lines) + "\n")
        except OSError as e:
            raise TransientIOError(f"Failed to write {path}: {e}", target=str(path)) from e
        self._prune()

    def _prune(self) -> None:
        if self.max_files <= 0:
            return
        files = sorted(self.directory.glob(f"{self.prefix}-????-??-??.jsonl"))
        for old in files[:-self.max_files]:
            try:
                old.unlink()
            except OSError as e:
                logger.warning(f"Could not remove old log file {old}: {e}")


class RemoteSink(EventSink):
    """POSTs each batch as NDJSON to an HTTP endpoint."""

    name = "remote"

    def __init__(
        self,
        endpoint: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session or create_session(retry_count=2)

    def write(self, lines: List[str]) -> None:
        if not lines:
            return
        try:
            response = self._session.post(
                self.endpoint,
                data=("\n".join(lines) + "\n").encode("utf-8"),
                headers={"Content-Type": "application/x-ndjson"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientIOError(f"Remote log delivery failed: {e}", target=self.endpoint) from e
        if response.status_code >= 300:
            raise TransientIOError(
                f"Remote log endpoint returned {response.status_code}", target=self.endpoint
            )

    def close(self) -> None:
        self._session.close()


# =============================================================================
# EVENT LOG
# =============================================================================

_ECHO_METHODS = {
    LogLevel.DEBUG: "debug",
    LogLevel.INFO: "info",
    LogLevel.WARN: "warning",
    LogLevel.ERROR: "error",
    LogLevel.FATAL: "critical",
}


class StructuredEventLog:
    """Buffered structured event log with pluggable sinks."""

    def __init__(
        self,
        config: Optional[LoggingConfig] = None,
        clock: Optional[Clock] = None,
        tracker: Optional[CorrelationTracker] = None,
        bus: Optional[EventBus] = None,
        sinks: Optional[List[EventSink]] = None,
        malformed_sink: Optional[EventSink] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.config = config or LoggingConfig()
        self.clock = clock or SystemClock()
        self.tracker = tracker
        self.bus = bus
        self._min_level = LogLevel.parse(self.config.level)

        if sinks is None:
            sinks = self._default_sinks()
        self.sinks: List[EventSink] = list(sinks)
        if malformed_sink is None and self.config.enable_file:
            malformed_sink = DailyFileSink(
                self.config.log_directory, f"{self.config.file_prefix}-malformed", self.clock
            )
        self.malformed_sink = malformed_sink

        self._buffer: List[Event] = []
        self._history: Deque[Event] = deque(maxlen=self.config.history_size)
        self._buffer_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipewatch-flush")
        self._pending_flush: Optional[Future] = None
        self._flush_task = PeriodicTask("event-log-flush", self.config.flush_interval, self.flush, self.clock)
        self._echo = get_logger("pipewatch.events")
        self._stats = self._empty_stats()

        registry = registry or CollectorRegistry()
        self._events_total = Counter(
            "pipewatch_events", "Events accepted by the event log", ["level"], registry=registry
        )
        self._flush_failures_total = Counter(
            "pipewatch_flush_failures", "Failed event log flushes", registry=registry
        )

    def _default_sinks(self) -> List[EventSink]:
        sinks: List[EventSink] = []
        if self.config.enable_file:
            sinks.append(DailyFileSink(
                self.config.log_directory, self.config.file_prefix, self.clock, self.config.max_files
            ))
        if self.config.remote_endpoint:
            sinks.append(RemoteSink(self.config.remote_endpoint, self.config.remote_timeout))
        return sinks

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "total_events": 0,
            "events_by_level": {level.value: 0 for level in LogLevel},
            "services": set(),
            "operations": set(),
            "performance_entries": 0,
            "audit_entries": 0,
            "flushes": 0,
            "flush_failures": 0,
            "last_flush_error": None,
            "flushed_events": 0,
            "malformed_events": 0,
            "serialized_bytes": 0,
            "max_event_size": 0,
        }

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    def emit(self, event: Event) -> Optional[Event]:
        """
        Accept an event. Returns the stored event, or None when it is
        below the configured minimum level.
        """
        if not isinstance(event, Event):
            raise ValidationError(f"emit() expects an Event, got {type(event).__name__}")
        if event.level.rank < self._min_level.rank:
            return None
        if not event.id:
            event = replace(event, id=uuid.uuid4().hex)

        with self._buffer_lock:
            self._buffer.append(event)
            self._history.append(event)
            buffered = len(self._buffer)
            self._count_locked(event)

        self._events_total.labels(level=event.level.value).inc()
        if self.tracker is not None:
            self.tracker.touch(event.correlation_id)
        if self.config.enable_console:
            self._echo_event(event)
        if buffered >= self.config.buffer_size:
            self._schedule_flush()
        return event

    def log(
        self,
        level: Union[str, LogLevel],
        message: str,
        correlation_id: Optional[str] = None,
        service: Optional[str] = None,
        operation: Optional[str] = None,
        tags: Iterable[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
        error: Union[BaseException, ErrorInfo, None] = None,
    ) -> Optional[Event]:
        level = LogLevel.parse(level)
        if not isinstance(message, str):
            raise ValidationError("Event message must be a string")
        if isinstance(tags, str):
            raise ValidationError("tags must be an iterable of strings, not a string")
        if level.rank < self._min_level.rank:
            return None

        metadata = dict(metadata or {})
        service = service or metadata.get("service") or self.config.service_name
        operation = operation or metadata.get("operation") or ""

        if isinstance(error, BaseException):
            error = ErrorInfo.from_exception(error)
        elif error is not None and not isinstance(error, ErrorInfo):
            raise ValidationError("error must be an exception or ErrorInfo")

        event = Event(
            level=level,
            message=message,
            correlation_id=self._resolve_correlation(correlation_id),
            timestamp=self.clock.now(),
            service=service,
            operation=operation,
            tags=frozenset(self._derive_tags(level, service, operation, metadata, tags)),
            metadata=metadata,
            error=error,
        )
        return self.emit(event)

    def _resolve_correlation(self, correlation_id: Optional[str]) -> str:
        if correlation_id:
            return correlation_id
        bound = current_correlation_id()
        if bound:
            return bound
        if self.tracker is not None:
            return self.tracker.new_correlation({"origin": "event_log"})
        return uuid.uuid4().hex

    def _derive_tags(
        self,
        level: LogLevel,
        service: str,
        operation: str,
        metadata: Dict[str, Any],
        extra: Iterable[str],
    ) -> List[str]:
        tags = [level.value]
        if metadata.get("type"):
            tags.append(str(metadata["type"]))
        if service:
            tags.append(f"service:{service}")
        if operation:
            tags.append(f"operation:{operation}")
        if metadata.get("stage"):
            tags.append(f"stage:{metadata['stage']}")
        tags.extend(str(t) for t in extra)
        return tags

    def debug(self, message: str, **kwargs: Any) -> Optional[Event]:
        return self.log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> Optional[Event]:
        return self.log(LogLevel.INFO, message, **kwargs)

    def warn(self, message: str, **kwargs: Any) -> Optional[Event]:
        return self.log(LogLevel.WARN, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> Optional[Event]:
        return self.log(LogLevel.ERROR, message, **kwargs)

    def fatal(self, message: str, **kwargs: Any) -> Optional[Event]:
        return self.log(LogLevel.FATAL, message, **kwargs)

    def performance(
        self,
        operation: str,
        duration_ms: float,
        correlation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Event]:
        if not self.config.enable_performance:
            return None
        return self.log(
            LogLevel.INFO,
            f"Performance: {operation}",
            correlation_id=correlation_id,
            operation=operation,
            metadata={**(metadata or {}), "duration_ms": duration_ms, "type": "performance"},
        )

    def pipeline(
        self,
        stage: str,
        operation: str,
        status: str,
        correlation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Event]:
        return self.log(
            _status_level(status),
            f"Pipeline {stage}: {operation} {status}",
            correlation_id=correlation_id,
            operation=operation,
            metadata={**(metadata or {}), "stage": stage, "status": status, "type": "pipeline"},
        )

    def service_event(
        self,
        service: str,
        operation: str,
        status: str,
        correlation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Event]:
        return self.log(
            _status_level(status),
            f"Service {service}: {operation} {status}",
            correlation_id=correlation_id,
            service=service,
            operation=operation,
            metadata={**(metadata or {}), "status": status, "type": "service"},
        )

    def audit(
        self,
        action: str,
        resource: str,
        result: str,
        risk_level: str = "low",
        correlation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Event]:
        """Audit trail entry. Level follows the risk level."""
        if not self.config.enable_audit:
            return None
        if risk_level not in ("low", "medium", "high", "critical"):
            raise ValidationError(f"Unknown audit risk level: {risk_level}")
        level = {"critical": LogLevel.FATAL, "high": LogLevel.ERROR}.get(risk_level, LogLevel.WARN)
        return self.log(
            level,
            f"Audit: {action} on {resource}",
            correlation_id=correlation_id,
            operation="audit",
            tags=["audit", f"risk-{risk_level}", result, *compliance_tags(action, resource)],
            metadata={
                **(metadata or {}),
                "action": action,
                "resource": resource,
                "result": result,
                "risk_level": risk_level,
                "type": "audit",
            },
        )

    def _echo_event(self, event: Event) -> None:
        method = getattr(self._echo, _ECHO_METHODS[event.level])
        extra: Dict[str, Any] = {
            "correlation_id": event.correlation_id,
            "service": event.service,
        }
        if event.operation:
            extra["operation"] = event.operation
        if event.error:
            extra["error"] = f"{event.error.name}: {event.error.message}"
        method(event.message, **extra)

    def _count_locked(self, event: Event) -> None:
        stats = self._stats
        stats["total_events"] += 1
        stats["events_by_level"][event.level.value] += 1
        if event.service:
            stats["services"].add(event.service)
        if event.operation:
            stats["operations"].add(event.operation)
        kind = event.metadata.get("type")
        if kind == "performance":
            stats["performance_entries"] += 1
        elif kind == "audit":
            stats["audit_entries"] += 1

    # -------------------------------------------------------------------------
    # Flushing
    # -------------------------------------------------------------------------

    def _schedule_flush(self) -> None:
        with self._buffer_lock:
            if self._pending_flush is not None and not self._pending_flush.done():
                return
            try:
                self._pending_flush = self._executor.submit(self.flush)
            except RuntimeError:
                # executor already shut down by destroy()
                self._pending_flush = None

    def wait_for_background_flush(self, timeout: Optional[float] = None) -> Optional[FlushResult]:
        """Block until a buffer-full flush scheduled in the background completes."""
        future = self._pending_flush
        if future is None:
            return None
        return future.result(timeout=timeout)

    def flush(self) -> FlushResult:
        """
        Write buffered events to every sink.

        Never raises. On sink failure the batch goes back to the front of
        the buffer so ordering with newer events is preserved.
        """
        with self._flush_lock:
            with self._buffer_lock:
                batch, self._buffer = self._buffer, []
            if not batch:
                return FlushResult()

            lines: List[str] = []
            good: List[Event] = []
            malformed: List[Tuple[Event, str]] = []
            for event in batch:
                try:
                    lines.append(serialize_event(event))
                    good.append(event)
                except (TypeError, ValueError) as e:
                    malformed.append((event, str(e)))

            if malformed:
                self._write_malformed(malformed)

            try:
                for sink in self.sinks:
                    sink.write(lines)
            except Exception as e:
                with self._buffer_lock:
                    self._buffer[:0] = good
                    self._stats["flush_failures"] += 1
                    self._stats["last_flush_error"] = str(e)
                self._flush_failures_total.inc()
                logger.warning(f"Event log flush failed, {len(good)} events re-buffered: {e}")
                if self.bus:
                    self.bus.publish(DomainEventType.FLUSH_FAILED, count=len(good), error=str(e))
                return FlushResult(0, len(malformed), str(e))

            with self._buffer_lock:
                stats = self._stats
                stats["flushes"] += 1
                stats["last_flush_error"] = None
                stats["flushed_events"] += len(good)
                for line in lines:
                    stats["serialized_bytes"] += len(line)
                    stats["max_event_size"] = max(stats["max_event_size"], len(line))

            if self.bus and good:
                self.bus.publish(DomainEventType.LOGS_FLUSHED, count=len(good))
            return FlushResult(len(good), len(malformed), None)

    def _write_malformed(self, malformed: List[Tuple[Event, str]]) -> None:
        records = []
        for event, reason in malformed:
            records.append(json.dumps({
                "id": event.id,
                "timestamp": event.timestamp.isoformat(),
                "level": event.level.value,
                "correlation_id": event.correlation_id,
                "message": event.message,
                "tags": sorted(event.tags | {"malformed"}),
                "reason": reason,
                "repr": repr(event)[:4000],
            }, default=str))
            logger.error(f"Malformed event {event.id} diverted: {reason}")
            if self.bus:
                self.bus.publish(DomainEventType.EVENT_MALFORMED, event_id=event.id, reason=reason)

        with self._buffer_lock:
            self._stats["malformed_events"] += len(malformed)

        if self.malformed_sink is not None:
            try:
                self.malformed_sink.write(records)
            except TransientIOError as e:
                logger.error(f"Could not write malformed events: {e}")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def query(
        self,
        level: Union[str, LogLevel, None] = None,
        min_level: Union[str, LogLevel, None] = None,
        service: Optional[str] = None,
        operation: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """Retained events matching every given filter, in emission order."""
        level = LogLevel.parse(level) if level is not None else None
        min_level = LogLevel.parse(min_level) if min_level is not None else None
        wanted_tags = set(tags) if tags else None

        with self._buffer_lock:
            events = list(self._history)

        results = []
        for event in events:
            if level is not None and event.level is not level:
                continue
            if min_level is not None and event.level.rank < min_level.rank:
                continue
            if service is not None and event.service != service:
                continue
            if operation is not None and event.operation != operation:
                continue
            if correlation_id is not None and event.correlation_id != correlation_id:
                continue
            if wanted_tags is not None and not (event.tags & wanted_tags):
                continue
            if start is not None and event.timestamp < start:
                continue
            if end is not None and event.timestamp > end:
                continue
            results.append(event)

        if limit is not None:
            results = results[-limit:] if limit > 0 else []
        return results

    def by_correlation(self, correlation_id: str) -> List[Event]:
        return self.query(correlation_id=correlation_id)

    def buffered_count(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    def get_stats(self) -> Dict[str, Any]:
        with self._buffer_lock:
            stats = dict(self._stats)
            stats["events_by_level"] = dict(self._stats["events_by_level"])
            stats["services"] = sorted(self._stats["services"])
            stats["operations"] = sorted(self._stats["operations"])
            stats["buffered"] = len(self._buffer)
            stats["retained"] = len(self._history)
        by_level = stats["events_by_level"]
        stats["errors"] = by_level["error"] + by_level["fatal"]
        stats["warnings"] = by_level["warn"]
        flushed = stats["flushed_events"]
        stats["average_event_size"] = stats["serialized_bytes"] / flushed if flushed else 0.0
        return stats

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        self._flush_task.start()

    def stop(self) -> FlushResult:
        """Cancel the periodic flush and attempt one final flush."""
        self._flush_task.stop()
        return self.flush()

    def update_config(self, **changes: Any) -> None:
        """Apply config changes; a new flush interval reschedules atomically."""
        for key, value in changes.items():
            if not hasattr(self.config, key):
                raise ValidationError(f"Unknown logging option: {key}")
        if "level" in changes:
            self._min_level = LogLevel.parse(changes["level"])
            changes["level"] = self._min_level.value
        if "flush_interval" in changes:
            self._flush_task.reschedule(float(changes["flush_interval"]))
        for key, value in changes.items():
            setattr(self.config, key, value)

    @property
    def flush_task(self) -> PeriodicTask:
        return self._flush_task

    def destroy(self) -> None:
        self._flush_task.stop()
        self._executor.shutdown(wait=True)
        with self._buffer_lock:
            self._buffer.clear()
            self._history.clear()
            self._stats = self._empty_stats()
        for sink in self.sinks:
            sink.close()


def _status_level(status: str) -> LogLevel:
    if status == "failed":
        return LogLevel.ERROR
    if status == "completed":
        return LogLevel.INFO
    return LogLevel.DEBUG


def compliance_tags(action: str, resource: str) -> List[str]:
    """Compliance tags derived from an audit action and resource."""
    tags = []
    if "create" in action or "delete" in action:
        tags.append("data-modification")
    if "read" in action or "query" in action:
        tags.append("data-access")
    if "user" in resource or "auth" in resource:
        tags.append("user-data")
    if "config" in resource or "secret" in resource:
        tags.append("configuration")
    return tags


__all__ = [
    "LogLevel",
    "ErrorInfo",
    "Event",
    "FlushResult",
    "serialize_event",
    "EventSink",
    "DailyFileSink",
    "RemoteSink",
    "StructuredEventLog",
    "compliance_tags",
]
