# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - DOMAIN EVENT BUS
# =============================================================================
"""
Domain Event Bus

Typed publish/subscribe channel for lifecycle notifications (alert
created, flush failed, pipeline closed, ...).

Each subscriber owns a bounded queue. Publishing never blocks the
producer: when a queue is full its oldest entry is discarded and the
subscription's drop counter goes up.

Usage:
    bus = EventBus()
    sub = bus.subscribe({DomainEventType.ALERT_CREATED})
    ...
    for event in sub.drain():
        print(event.payload["alert_id"])
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from pipewatch.clock import Clock, SystemClock, utcnow


logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class DomainEventType(str, Enum):
    """Lifecycle notifications published by pipewatch components."""
    LOGS_FLUSHED = "logs_flushed"
    FLUSH_FAILED = "flush_failed"
    EVENT_MALFORMED = "event_malformed"
    CORRELATION_EXPIRED = "correlation_expired"
    SPAN_STARTED = "span_started"
    SPAN_ENDED = "span_ended"
    PIPELINE_CLOSED = "pipeline_closed"
    ERROR_TRACKED = "error_tracked"
    ERROR_RESOLVED = "error_resolved"
    ERROR_THRESHOLD_EXCEEDED = "error_threshold_exceeded"
    BOTTLENECK_DETECTED = "bottleneck_detected"
    SNAPSHOT_COLLECTED = "snapshot_collected"
    ALERT_CREATED = "alert_created"
    ALERT_UPDATED = "alert_updated"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_RESOLVED = "alert_resolved"
    ALERT_SUPPRESSED = "alert_suppressed"
    ALERT_UNSUPPRESSED = "alert_unsuppressed"
    ALERT_ESCALATED = "alert_escalated"
    NOTIFICATIONS_SENT = "notifications_sent"


@dataclass(frozen=True)
class DomainEvent:
    type: DomainEventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


# =============================================================================
# SUBSCRIPTION
# =============================================================================

class Subscription:
    """Bounded queue of domain events for one consumer."""

    def __init__(self, types: Optional[Set[DomainEventType]] = None, maxsize: int = 1000):
        self.types = frozenset(types) if types else None
        self._queue: "queue.Queue[DomainEvent]" = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self.dropped = 0
        self.closed = False

    def accepts(self, event: DomainEvent) -> bool:
        return not self.closed and (self.types is None or event.type in self.types)

    def offer(self, event: DomainEvent) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        pass

    def get(self, timeout: Optional[float] = None) -> Optional[DomainEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_nowait(self) -> Optional[DomainEvent]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> List[DomainEvent]:
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    def close(self) -> None:
        self.closed = True


# =============================================================================
# EVENT BUS
# =============================================================================

class EventBus:
    """Fan-out of DomainEvents to subscriptions."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        types: Optional[Iterable[DomainEventType]] = None,
        maxsize: int = 1000,
    ) -> Subscription:
        sub = Subscription(set(types) if types else None, maxsize=maxsize)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def publish(self, event_type: DomainEventType, **payload: Any) -> DomainEvent:
        event = DomainEvent(type=event_type, payload=payload, timestamp=self.clock.now())
        with self._lock:
            targets = [s for s in self._subscriptions if s.accepts(event)]
        for sub in targets:
            sub.offer(event)
        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def clear(self) -> None:
        with self._lock:
            for sub in self._subscriptions:
                sub.close()
            self._subscriptions.clear()


__all__ = [
    "DomainEventType",
    "DomainEvent",
    "Subscription",
    "EventBus",
]
