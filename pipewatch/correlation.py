# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - CORRELATION TRACKER
# =============================================================================
"""
Correlation Tracker

Issues correlation ids and keeps the context each id was created with.
Ids that stay idle longer than the configured timeout are swept, unless
a span for that id is still open.

Usage:
    tracker = CorrelationTracker(CorrelationConfig(), clock)
    cid = tracker.new_correlation({"request": "GET /users"})
    tracker.touch(cid)
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from pipewatch.bus import DomainEventType, EventBus
from pipewatch.clock import Clock, SystemClock
from pipewatch.config import CorrelationConfig


logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class CorrelationContext:
    """Immutable record of where a correlation id came from."""
    id: str
    created_at: datetime
    origin_context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "origin_context": dict(self.origin_context),
        }


# =============================================================================
# TRACKER
# =============================================================================

class CorrelationTracker:
    """Registry of live correlation ids."""

    def __init__(
        self,
        config: Optional[CorrelationConfig] = None,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config or CorrelationConfig()
        self.clock = clock or SystemClock()
        self.bus = bus
        self._contexts: Dict[str, CorrelationContext] = {}
        self._last_seen: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._open_span_probe: Optional[Callable[[str], bool]] = None
        self._total_created = 0
        self._total_expired = 0

    def set_open_span_probe(self, probe: Optional[Callable[[str], bool]]) -> None:
        """Register the callable that reports whether an id has open spans."""
        self._open_span_probe = probe

    def new_correlation(self, context: Optional[Mapping[str, Any]] = None) -> str:
        correlation_id = uuid.uuid4().hex
        self._register(correlation_id, dict(context or {}))
        return correlation_id

    def _register(self, correlation_id: str, context: Dict[str, Any]) -> CorrelationContext:
        now = self.clock.now()
        ctx = CorrelationContext(
            id=correlation_id,
            created_at=now,
            origin_context=MappingProxyType(context),
        )
        with self._lock:
            self._contexts[correlation_id] = ctx
            self._last_seen[correlation_id] = now
            self._total_created += 1
        return ctx

    def get(self, correlation_id: str) -> Optional[CorrelationContext]:
        with self._lock:
            return self._contexts.get(correlation_id)

    def touch(self, correlation_id: str) -> None:
        """Record activity; unknown upstream ids are adopted."""
        if not correlation_id:
            return
        with self._lock:
            if correlation_id in self._contexts:
                self._last_seen[correlation_id] = self.clock.now()
                return
        self._register(correlation_id, {"adopted": True})

    def last_seen(self, correlation_id: str) -> Optional[datetime]:
        with self._lock:
            return self._last_seen.get(correlation_id)

    def __contains__(self, correlation_id: str) -> bool:
        with self._lock:
            return correlation_id in self._contexts

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def sweep(self) -> List[str]:
        """Drop ids idle past idle_timeout that have no open spans."""
        now = self.clock.now()
        with self._lock:
            idle = [
                cid for cid, seen in self._last_seen.items()
                if (now - seen).total_seconds() > self.config.idle_timeout
            ]

        probe = self._open_span_probe
        expired = [cid for cid in idle if not (probe and probe(cid))]

        with self._lock:
            # ids touched since the idle scan stay
            expired = [
                cid for cid in expired
                if cid in self._last_seen
                and (now - self._last_seen[cid]).total_seconds() > self.config.idle_timeout
            ]
            for cid in expired:
                self._contexts.pop(cid, None)
                self._last_seen.pop(cid, None)
            self._total_expired += len(expired)

        if expired:
            logger.debug(f"Expired {len(expired)} idle correlation ids")
            if self.bus:
                self.bus.publish(DomainEventType.CORRELATION_EXPIRED, correlation_ids=expired)
        return expired

    def stats(self) -> Dict[str, Any]:
        now = self.clock.now()
        with self._lock:
            ages = [(now - c.created_at).total_seconds() for c in self._contexts.values()]
            return {
                "active": len(self._contexts),
                "total_created": self._total_created,
                "total_expired": self._total_expired,
                "average_age_seconds": sum(ages) / len(ages) if ages else 0.0,
            }

    def destroy(self) -> None:
        with self._lock:
            self._contexts.clear()
            self._last_seen.clear()


__all__ = [
    "CorrelationContext",
    "CorrelationTracker",
]
