"""Shared fixtures: a manual clock and components wired to temporary directories."""

from __future__ import annotations

from typing import List

import pytest

from pipewatch.bus import EventBus
from pipewatch.clock import ManualClock
from pipewatch.config import LoggingConfig
from pipewatch.correlation import CorrelationTracker
from pipewatch.event_log import EventSink, StructuredEventLog
from pipewatch.exceptions import TransientIOError


class MemorySink(EventSink):
    """Sink that keeps written lines, optionally failing on demand."""

    def __init__(self):
        self.lines: List[str] = []
        self.fail = False
        self.writes = 0

    def write(self, lines: List[str]) -> None:
        self.writes += 1
        if self.fail:
            raise TransientIOError("sink unavailable", target="memory")
        self.lines.extend(lines)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def bus(clock):
    return EventBus(clock)


@pytest.fixture
def tracker(clock, bus):
    return CorrelationTracker(clock=clock, bus=bus)


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def logging_config(tmp_path):
    return LoggingConfig(
        level="debug",
        buffer_size=100,
        log_directory=str(tmp_path / "logs"),
        enable_console=False,
    )


@pytest.fixture
def event_log(logging_config, clock, tracker, bus, sink):
    log = StructuredEventLog(
        logging_config, clock, tracker=tracker, bus=bus, sinks=[sink], malformed_sink=MemorySink()
    )
    yield log
    log.destroy()
