"""Tests for pipewatch.logger."""

from __future__ import annotations

import json
import logging
import logging.handlers

import pytest
import structlog

from pipewatch.config import LoggingConfig
from pipewatch.logger import (
    configure_logging,
    correlation_context,
    current_correlation_id,
    get_logger,
    json_formatter,
    log_context,
    mask_dict,
    setup_logging,
)


@pytest.fixture
def reset_logging():
    root = logging.getLogger()
    before, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
            handler.close()
    for handler in before:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


def read_lines(path):
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestMasking:
    def test_long_secret_keeps_edges(self):
        masked = mask_dict({"api_key": "abcd1234efgh5678"})
        assert masked["api_key"] == "abcd****5678"

    def test_short_and_non_string_values_fully_masked(self):
        masked = mask_dict({"password": "short", "token": 12345})
        assert masked == {"password": "****", "token": "****"}

    def test_nested_dicts_and_lists_are_masked(self):
        masked = mask_dict({
            "channel": {"smtp_password": "hunter2", "host": "smtp"},
            "hooks": [{"webhook-url": "https://hooks.example.com/T000/B000"}],
        })
        assert masked["channel"] == {"smtp_password": "****", "host": "smtp"}
        assert masked["hooks"] == [{"webhook-url": "http****B000"}]

    def test_plain_keys_untouched(self):
        assert mask_dict({"url": "https://example.com"}) == {"url": "https://example.com"}


class TestCorrelationContext:
    def test_binds_and_unbinds(self):
        assert current_correlation_id() is None
        with correlation_context("cid-1"):
            assert current_correlation_id() == "cid-1"
        assert current_correlation_id() is None

    def test_nested_blocks_restore_outer_value(self):
        with correlation_context("outer"):
            with log_context(correlation_id="inner"):
                assert current_correlation_id() == "inner"
            assert current_correlation_id() == "outer"

    def test_unbinds_when_block_raises(self):
        with pytest.raises(RuntimeError):
            with correlation_context("cid-err"):
                raise RuntimeError("boom")
        assert current_correlation_id() is None


class TestJsonFormatter:
    def test_stdlib_record_carries_bound_correlation_id(self):
        record = logging.LogRecord("pipewatch.test", logging.INFO, __file__, 1,
                                   "hello", None, None)
        with correlation_context("cid-42"):
            data = json.loads(json_formatter().format(record))
        assert data["event"] == "hello"
        assert data["correlation_id"] == "cid-42"
        assert data["level"] == "info"
        assert data["logger"] == "pipewatch.test"


class TestSetupLogging:
    def test_stdlib_and_structlog_share_the_log_file(self, tmp_path, reset_logging):
        setup_logging(level="debug", fmt="text", log_dir=str(tmp_path))

        logging.getLogger("pipewatch.test").info("from stdlib")
        get_logger("pipewatch.test").info("from structlog", token="abcd1234efgh5678")

        first, second = read_lines(tmp_path / "pipewatch.log")
        assert first["event"] == "from stdlib"
        assert second["event"] == "from structlog"
        assert second["token"] == "abcd****5678"

    def test_level_filters_records(self, tmp_path, reset_logging):
        setup_logging(level="warn", log_dir=str(tmp_path))

        logging.getLogger("pipewatch.test").info("dropped")
        logging.getLogger("pipewatch.test").warning("kept")

        assert [line["event"] for line in read_lines(tmp_path / "pipewatch.log")] == ["kept"]

    def test_configure_from_logging_section(self, tmp_path, reset_logging):
        config = LoggingConfig(level="error", log_directory=str(tmp_path / "logs"), max_files=3)
        root = configure_logging(config)

        assert root.level == logging.ERROR
        [file_handler] = [h for h in root.handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
        assert file_handler.backupCount == 3

    def test_file_output_can_be_disabled(self, tmp_path, reset_logging):
        config = LoggingConfig(log_directory=str(tmp_path / "logs"), enable_file=False)
        root = configure_logging(config, debug=True)

        assert root.level == logging.DEBUG
        assert not (tmp_path / "logs").exists()
