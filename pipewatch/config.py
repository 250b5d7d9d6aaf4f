# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - CONFIGURATION
# =============================================================================
"""
Configuration

Typed per-component configuration plus the YAML/environment loader.

Loading order:
    1. YAML file (if present)
    2. PIPEWATCH_* environment variable overrides
    3. Built-in defaults for anything still missing

Usage:
    raw = load_config("config/pipewatch.yaml")
    config = PipewatchConfig.from_dict(raw)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from pipewatch.exceptions import ValidationError


logger = logging.getLogger(__name__)


LOG_LEVELS = ("debug", "info", "warn", "error", "fatal")


# =============================================================================
# HELPERS
# =============================================================================

def _coerce(name: str, value: Any, default: Any) -> Any:
    """Coerce a raw YAML/env value to the type of the field default."""
    if default is None or value is None:
        return value
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        if isinstance(default, str):
            return str(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid value for {name}: {value!r}") from e
    return value


def _build(cls, data: Optional[Dict[str, Any]], nested: Optional[Dict[str, Any]] = None):
    """Instantiate a flat config dataclass from a dict, ignoring unknown keys."""
    data = dict(data or {})
    nested = nested or {}
    kwargs = {}
    defaults = cls()
    for f in fields(cls):
        if f.name in nested or f.name not in data:
            continue
        kwargs[f.name] = _coerce(f"{cls.__name__}.{f.name}", data[f.name], getattr(defaults, f.name))
    kwargs.update(nested)
    return cls(**kwargs)


def _require_positive(section: str, **values: float) -> None:
    for key, value in values.items():
        if value is None or value <= 0:
            raise ValidationError(f"{section}.{key} must be positive, got {value!r}")


# =============================================================================
# COMPONENT CONFIGURATION
# =============================================================================

@dataclass
class LoggingConfig:
    level: str = "info"
    service_name: str = "pipewatch"
    buffer_size: int = 1000
    flush_interval: float = 5.0
    history_size: int = 10000
    log_directory: str = "./logs"
    file_prefix: str = "pipewatch"
    max_files: int = 10
    enable_console: bool = True
    enable_file: bool = True
    enable_audit: bool = True
    enable_performance: bool = True
    remote_endpoint: Optional[str] = None
    remote_timeout: float = 5.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LoggingConfig":
        cfg = _build(cls, data)
        cfg.level = cfg.level.lower()
        if cfg.level == "warning":
            cfg.level = "warn"
        if cfg.level not in LOG_LEVELS:
            raise ValidationError(f"Unknown log level: {cfg.level}")
        _require_positive("logging", buffer_size=cfg.buffer_size,
                          flush_interval=cfg.flush_interval, history_size=cfg.history_size)
        return cfg


@dataclass
class CorrelationConfig:
    idle_timeout: float = 3600.0
    sweep_interval: float = 300.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CorrelationConfig":
        cfg = _build(cls, data)
        _require_positive("correlation", idle_timeout=cfg.idle_timeout,
                          sweep_interval=cfg.sweep_interval)
        return cfg


@dataclass
class TraceThresholds:
    memory_warning_mb: float = 100.0
    memory_error_mb: float = 500.0
    cpu_warning_percent: float = 80.0
    cpu_error_percent: float = 95.0
    duration_warning_ms: float = 5000.0
    duration_error_ms: float = 30000.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TraceThresholds":
        return _build(cls, data)


@dataclass
class TraceConfig:
    thresholds: TraceThresholds = field(default_factory=TraceThresholds)
    max_history: int = 1000
    retention_hours: float = 24.0
    sweep_interval: float = 3600.0
    sample_resources: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TraceConfig":
        data = data or {}
        cfg = _build(cls, data, {"thresholds": TraceThresholds.from_dict(data.get("thresholds"))})
        _require_positive("tracing", max_history=cfg.max_history,
                          retention_hours=cfg.retention_hours, sweep_interval=cfg.sweep_interval)
        return cfg


@dataclass
class ErrorTrackingConfig:
    retention_days: float = 30.0
    max_records: int = 10000
    stack_frames: int = 5
    notification_frequency: int = 10
    notification_severity: str = "high"
    sweep_interval: float = 3600.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ErrorTrackingConfig":
        cfg = _build(cls, data)
        _require_positive("error_tracking", retention_days=cfg.retention_days,
                          max_records=cfg.max_records, sweep_interval=cfg.sweep_interval)
        return cfg


@dataclass
class ThresholdPair:
    warning: float
    critical: float

    @classmethod
    def from_value(cls, name: str, value: Any) -> "ThresholdPair":
        if isinstance(value, ThresholdPair):
            return value
        if isinstance(value, dict):
            pair = cls(float(value["warning"]), float(value["critical"]))
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            pair = cls(float(value[0]), float(value[1]))
        else:
            raise ValidationError(f"Invalid threshold for {name}: {value!r}")
        if pair.warning > pair.critical:
            raise ValidationError(f"Warning threshold above critical for {name}")
        return pair


DEFAULT_METRIC_THRESHOLDS: Dict[str, ThresholdPair] = {
    "cpu": ThresholdPair(70.0, 90.0),
    "memory": ThresholdPair(80.0, 95.0),
    "disk": ThresholdPair(85.0, 95.0),
    "response_time": ThresholdPair(1000.0, 5000.0),
    "error_rate": ThresholdPair(5.0, 10.0),
}


@dataclass
class MetricsConfig:
    collection_interval: float = 30.0
    max_samples: int = 1000
    max_snapshots: int = 1000
    min_trend_samples: int = 10
    trend_window: int = 10
    prometheus_port: Optional[int] = None
    thresholds: Dict[str, ThresholdPair] = field(
        default_factory=lambda: dict(DEFAULT_METRIC_THRESHOLDS)
    )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MetricsConfig":
        data = data or {}
        thresholds = dict(DEFAULT_METRIC_THRESHOLDS)
        for name, value in (data.get("thresholds") or {}).items():
            thresholds[name] = ThresholdPair.from_value(name, value)
        cfg = _build(cls, data, {"thresholds": thresholds})
        if cfg.prometheus_port is not None:
            cfg.prometheus_port = int(cfg.prometheus_port)
        _require_positive("metrics", collection_interval=cfg.collection_interval,
                          max_samples=cfg.max_samples, max_snapshots=cfg.max_snapshots)
        if cfg.trend_window < 2 or cfg.min_trend_samples < cfg.trend_window:
            raise ValidationError("metrics.trend_window must be >= 2 and <= min_trend_samples")
        return cfg


@dataclass
class AlertingConfig:
    evaluation_interval: float = 60.0
    escalation_interval: float = 30.0
    suppression_interval: float = 30.0
    notification_workers: int = 4
    rules: List[Dict[str, Any]] = field(default_factory=list)
    channels: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    include_default_rules: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AlertingConfig":
        data = data or {}
        cfg = _build(cls, data, {
            "rules": list(data.get("rules") or []),
            "channels": dict(data.get("channels") or {}),
        })
        _require_positive("alerting", evaluation_interval=cfg.evaluation_interval,
                          escalation_interval=cfg.escalation_interval,
                          suppression_interval=cfg.suppression_interval,
                          notification_workers=cfg.notification_workers)
        return cfg


@dataclass
class PipewatchConfig:
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    tracing: TraceConfig = field(default_factory=TraceConfig)
    error_tracking: ErrorTrackingConfig = field(default_factory=ErrorTrackingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PipewatchConfig":
        data = data or {}
        return cls(
            logging=LoggingConfig.from_dict(data.get("logging")),
            correlation=CorrelationConfig.from_dict(data.get("correlation")),
            tracing=TraceConfig.from_dict(data.get("tracing")),
            error_tracking=ErrorTrackingConfig.from_dict(data.get("error_tracking")),
            metrics=MetricsConfig.from_dict(data.get("metrics")),
            alerting=AlertingConfig.from_dict(data.get("alerting")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# LOADER
# =============================================================================

def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML file and environment variables.

    Environment variables override YAML values.

    Args:
        config_path: Path to pipewatch.yaml

    Returns:
        Merged configuration dictionary
    """
    config: Dict[str, Any] = {}

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config = yaml.safe_load(f) or {}
        if not isinstance(config, dict):
            raise ValidationError(f"Config root must be a mapping: {config_path}")
        logger.info(f"Loaded config from {config_path}")
    else:
        logger.warning(f"Config file not found: {config_path}, using defaults")

    env_mappings = {
        # Event log
        "PIPEWATCH_LOG_LEVEL": ("logging", "level"),
        "PIPEWATCH_LOG_DIR": ("logging", "log_directory"),
        "PIPEWATCH_SERVICE_NAME": ("logging", "service_name"),
        "PIPEWATCH_FLUSH_INTERVAL": ("logging", "flush_interval"),
        "PIPEWATCH_BUFFER_SIZE": ("logging", "buffer_size"),
        "PIPEWATCH_REMOTE_ENDPOINT": ("logging", "remote_endpoint"),
        # Metrics
        "PIPEWATCH_METRICS_PORT": ("metrics", "prometheus_port"),
        "PIPEWATCH_COLLECTION_INTERVAL": ("metrics", "collection_interval"),
        # Alerting
        "PIPEWATCH_EVALUATION_INTERVAL": ("alerting", "evaluation_interval"),
    }

    for env_var, (section, key) in env_mappings.items():
        value = os.environ.get(env_var)
        if value is not None:
            if section not in config or config[section] is None:
                config[section] = {}
            if value.isdigit():
                value = int(value)
            config[section][key] = value

    defaults = {
        "logging": {
            "level": "info",
            "service_name": "pipewatch",
            "buffer_size": 1000,
            "flush_interval": 5,
            "log_directory": "./logs",
        },
        "correlation": {
            "idle_timeout": 3600,
            "sweep_interval": 300,
        },
        "tracing": {
            "max_history": 1000,
            "retention_hours": 24,
        },
        "error_tracking": {
            "retention_days": 30,
            "max_records": 10000,
        },
        "metrics": {
            "collection_interval": 30,
            "max_samples": 1000,
        },
        "alerting": {
            "evaluation_interval": 60,
            "escalation_interval": 30,
            "suppression_interval": 30,
            "rules": [],
            "channels": {"console": {"type": "console"}},
        },
    }

    for section, section_defaults in defaults.items():
        if section not in config or config[section] is None:
            config[section] = {}
        for key, default_value in section_defaults.items():
            if key not in config[section]:
                config[section][key] = default_value

    return config


__all__ = [
    "LOG_LEVELS",
    "LoggingConfig",
    "CorrelationConfig",
    "TraceThresholds",
    "TraceConfig",
    "ErrorTrackingConfig",
    "ThresholdPair",
    "DEFAULT_METRIC_THRESHOLDS",
    "MetricsConfig",
    "AlertingConfig",
    "PipewatchConfig",
    "load_config",
]
