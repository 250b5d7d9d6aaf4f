"""Tests for pipewatch.config."""

from __future__ import annotations

import pytest
import yaml

from pipewatch.config import (
    LoggingConfig,
    MetricsConfig,
    PipewatchConfig,
    ThresholdPair,
    load_config,
)
from pipewatch.exceptions import ValidationError


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        raw = load_config(str(tmp_path / "missing.yaml"))
        assert raw["logging"]["level"] == "info"
        assert raw["alerting"]["channels"] == {"console": {"type": "console"}}

    def test_yaml_values_win_over_defaults(self, tmp_path):
        path = tmp_path / "pipewatch.yaml"
        path.write_text(yaml.safe_dump({"logging": {"level": "debug", "buffer_size": 10}}))
        raw = load_config(str(path))
        assert raw["logging"]["level"] == "debug"
        assert raw["logging"]["buffer_size"] == 10
        assert raw["logging"]["flush_interval"] == 5

    def test_environment_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "pipewatch.yaml"
        path.write_text(yaml.safe_dump({"logging": {"buffer_size": 10}}))
        monkeypatch.setenv("PIPEWATCH_BUFFER_SIZE", "250")
        monkeypatch.setenv("PIPEWATCH_LOG_LEVEL", "warn")
        raw = load_config(str(path))
        assert raw["logging"]["buffer_size"] == 250
        assert raw["logging"]["level"] == "warn"

    def test_non_mapping_root_is_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValidationError):
            load_config(str(path))

    def test_shipped_config_parses(self):
        from pathlib import Path

        path = Path(__file__).resolve().parent.parent / "config" / "pipewatch.yaml"
        config = PipewatchConfig.from_dict(load_config(str(path)))
        assert config.alerting.include_default_rules
        assert "webhook" in config.alerting.channels


class TestSectionParsing:
    def test_warning_level_alias(self):
        assert LoggingConfig.from_dict({"level": "WARNING"}).level == "warn"

    def test_unknown_level_rejected(self):
        with pytest.raises(ValidationError):
            LoggingConfig.from_dict({"level": "loud"})

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValidationError):
            PipewatchConfig.from_dict({"alerting": {"evaluation_interval": 0}})

    def test_string_numbers_are_coerced(self):
        cfg = LoggingConfig.from_dict({"flush_interval": "2.5", "enable_file": "false"})
        assert cfg.flush_interval == 2.5
        assert cfg.enable_file is False

    def test_threshold_overrides_merge_with_defaults(self):
        cfg = MetricsConfig.from_dict({"thresholds": {"cpu": {"warning": 60, "critical": 85}}})
        assert cfg.thresholds["cpu"] == ThresholdPair(60.0, 85.0)
        assert cfg.thresholds["memory"] == ThresholdPair(80.0, 95.0)

    def test_threshold_warning_above_critical_rejected(self):
        with pytest.raises(ValidationError):
            ThresholdPair.from_value("cpu", [95, 90])

    def test_round_trip_to_dict(self):
        config = PipewatchConfig.from_dict({"correlation": {"idle_timeout": 10}})
        data = config.to_dict()
        assert data["correlation"]["idle_timeout"] == 10
        assert PipewatchConfig.from_dict(data).correlation.idle_timeout == 10
