"""Tests for pipewatch.main."""

from __future__ import annotations

import asyncio

from pipewatch.config import PipewatchConfig
from pipewatch.main import PipewatchRunner, parse_args
from pipewatch.service import PipewatchService


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.config == "config/pipewatch.yaml"
        assert args.debug is False
        assert args.status_interval == 60.0

    def test_overrides(self):
        args = parse_args(["--config", "other.yaml", "--debug", "--status-interval", "5"])
        assert args.config == "other.yaml"
        assert args.debug is True
        assert args.status_interval == 5.0


class TestRunner:
    def test_runs_until_stop_requested(self, logging_config, clock):
        service = PipewatchService(PipewatchConfig(logging=logging_config), clock)
        runner = PipewatchRunner(service, status_interval=0.01)

        async def scenario():
            task = asyncio.ensure_future(runner.run())
            await asyncio.sleep(0.05)
            assert service.running
            runner.request_stop()
            await asyncio.wait_for(task, timeout=5)

        try:
            asyncio.run(scenario())
            assert not service.running
        finally:
            service.destroy()

    def test_request_stop_before_run_is_a_no_op(self, logging_config, clock):
        service = PipewatchService(PipewatchConfig(logging=logging_config), clock)
        try:
            PipewatchRunner(service).request_stop()
            assert not service.running
        finally:
            service.destroy()
