# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - CLOCK AND TIMERS
# =============================================================================
"""
Clock and Timers

Injectable time source shared by every component so that flush, sweep,
evaluation and escalation schedules can be driven deterministically in
tests and replays.

Features:
    - SystemClock backed by daemon threading.Timer
    - ManualClock advanced explicitly by tests
    - PeriodicTask with atomic cancel-and-reschedule

Usage:
    clock = ManualClock()
    task = PeriodicTask("flush", 5.0, event_log.flush, clock)
    task.start()
    clock.advance(5)   # flush runs once
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from pipewatch.exceptions import ValidationError


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# TIMER HANDLE
# =============================================================================

class TimerHandle:
    """Handle returned by Clock.call_later."""

    def __init__(self) -> None:
        self._cancelled = False
        self._fired = False
        self._cancel_fn: Optional[Callable[[], None]] = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._cancel_fn is not None:
            self._cancel_fn()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    def _fire(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            return
        self._fired = True
        try:
            callback()
        except Exception as e:
            logger.exception(f"Timer callback failed: {e}")


# =============================================================================
# CLOCKS
# =============================================================================

class Clock(ABC):
    """Time source and one-shot timer factory."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time (UTC aware)."""
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback once after delay seconds."""
        pass


class SystemClock(Clock):
    """Wall clock with daemon threading.Timer timers."""

    def now(self) -> datetime:
        return utcnow()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        timer = threading.Timer(max(delay, 0.0), handle._fire, args=(callback,))
        timer.daemon = True
        handle._cancel_fn = timer.cancel
        timer.start()
        return handle


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Due callbacks run on the thread calling advance(), in due-time order,
    outside the clock's lock so they may schedule further timers.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()
        self._timers: List[Tuple[datetime, int, TimerHandle, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        with self._lock:
            due = self._now + timedelta(seconds=max(delay, 0.0))
            heapq.heappush(self._timers, (due, next(self._seq), handle, callback))
        return handle

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer that falls due."""
        if seconds < 0:
            raise ValidationError("Cannot move a ManualClock backwards")
        with self._lock:
            target = self._now + timedelta(seconds=seconds)

        while True:
            with self._lock:
                if self._timers and self._timers[0][0] <= target:
                    due, _, handle, callback = heapq.heappop(self._timers)
                    if due > self._now:
                        self._now = due
                else:
                    self._now = target
                    break
            handle._fire(callback)

    def set(self, when: datetime) -> None:
        self.advance((when - self.now()).total_seconds())

    def pending(self) -> int:
        """Number of scheduled, uncancelled timers."""
        with self._lock:
            return sum(1 for _, _, h, _ in self._timers if not h.cancelled)


# =============================================================================
# PERIODIC TASK
# =============================================================================

class PeriodicTask:
    """
    Repeating job on its own timer.

    A generation counter ties every scheduled tick to the schedule that
    created it, so a tick left over from before stop() or reschedule()
    never runs the body.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], object],
        clock: Clock,
    ):
        if interval <= 0:
            raise ValidationError(f"Interval for {name} must be positive, got {interval}")
        self.name = name
        self.func = func
        self.clock = clock
        self._interval = float(interval)
        self._lock = threading.Lock()
        self._handle: Optional[TimerHandle] = None
        self._generation = 0
        self._running = False
        self.run_count = 0
        self.last_error: Optional[BaseException] = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._schedule_locked()
        logger.debug(f"Periodic task started: {self.name} every {self._interval}s")

    def stop(self) -> None:
        with self._lock:
            self._running = False
            self._generation += 1
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None
        logger.debug(f"Periodic task stopped: {self.name}")

    def reschedule(self, interval: float) -> None:
        """Change the interval, cancelling the pending tick atomically."""
        if interval <= 0:
            raise ValidationError(f"Interval for {self.name} must be positive, got {interval}")
        with self._lock:
            self._interval = float(interval)
            self._generation += 1
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None
            if self._running:
                self._schedule_locked()

    def run_now(self) -> None:
        """Run the body once, recording any failure."""
        try:
            self.func()
            self.last_error = None
        except Exception as e:
            self.last_error = e
            logger.exception(f"Periodic task {self.name} failed: {e}")
        finally:
            self.run_count += 1

    def _schedule_locked(self) -> None:
        generation = self._generation
        self._handle = self.clock.call_later(
            self._interval, lambda: self._tick(generation)
        )

    def _tick(self, generation: int) -> None:
        with self._lock:
            if not self._running or generation != self._generation:
                return
        self.run_now()
        with self._lock:
            if self._running and generation == self._generation:
                self._schedule_locked()


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "utcnow",
    "TimerHandle",
    "Clock",
    "SystemClock",
    "ManualClock",
    "PeriodicTask",
]
