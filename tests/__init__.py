# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - TEST PACKAGE
# =============================================================================
"""
Test Package

Tests for the pipewatch observability pipeline.

Test Structure:
    tests/
    ├── __init__.py              # This file
    ├── conftest.py              # Manual clock, bus, tracker and event log fixtures
    ├── test_clock.py            # Timers and periodic tasks
    ├── test_bus.py              # Domain event bus
    ├── test_config.py           # YAML/env configuration
    ├── test_logger.py           # structlog setup and masking
    ├── test_correlation.py      # Correlation tracker
    ├── test_event_log.py        # Structured event log and sinks
    ├── test_tracing.py          # Span trees and pipeline analysis
    ├── test_error_index.py      # Error fingerprinting
    ├── test_metrics.py          # Metrics store and bottlenecks
    ├── test_notifications.py    # Channels and dispatcher
    ├── test_alerts.py           # Alert rules and lifecycle
    ├── test_service.py          # Service facade
    ├── test_main.py             # CLI runner
    └── test_concurrency.py      # Threaded producers on shared components

Running Tests:
    # Run all tests
    pytest tests/ -v

    # Run specific test file
    pytest tests/test_alerts.py -v

Every timing-dependent test drives a ManualClock, so nothing sleeps on
timers.
"""
