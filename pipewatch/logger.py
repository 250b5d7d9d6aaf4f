# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - PROCESS LOGGING
# =============================================================================
"""
Process Logging

Diagnostics for pipewatch itself: how the pipeline reports on its own flushes,
sweeps and deliveries. Producer events go through StructuredEventLog; this
module only configures the logging those components write to.

Features:
    - One structlog processor chain shared by structlog and stdlib records
    - Secret redaction in nested dicts and lists
    - Rotating JSON file under the configured log directory
    - Correlation id carried implicitly through contextvars

Usage:
    configure_logging(config.logging, debug=args.debug)

    with correlation_context(correlation_id):
        service.log("info", "stage started")   # picks up correlation_id
"""

from __future__ import annotations

import logging
import logging.handlers
import re
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import structlog
from structlog.contextvars import (
    bind_contextvars,
    get_contextvars,
    merge_contextvars,
    unbind_contextvars,
)

from pipewatch.config import LoggingConfig


CORRELATION_KEY = "correlation_id"
LOG_FILE_NAME = "pipewatch.log"
MASK = "****"

# stdlib names for pipewatch levels
_STDLIB_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_QUIET_LIBRARIES = ("urllib3", "requests", "prometheus_client")


# =============================================================================
# REDACTION
# =============================================================================

_SECRET_KEY = re.compile(
    r"token|api_?key|password|passwd|secret|credential|private_?key|authorization|webhook_?url",
    re.IGNORECASE,
)


def _redact_value(value: Any) -> str:
    if isinstance(value, str) and len(value) > 8:
        return f"{value[:4]}{MASK}{value[-4:]}"
    return MASK


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {
            key: _redact_value(value) if _SECRET_KEY.search(str(key).replace("-", "_")) else _redact(value)
            for key, value in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return type(obj)(_redact(item) for item in obj)
    return obj


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor: mask values stored under secret-looking keys."""
    return _redact(event_dict)


def mask_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Redacted copy of *data*, for channel options and payload dumps."""
    return _redact(data)


# =============================================================================
# CONFIGURATION
# =============================================================================

def _level_number(level: str) -> int:
    return _STDLIB_LEVELS.get(str(level).lower(), logging.INFO)


def _shared_chain(redact: bool) -> List[Any]:
    chain: List[Any] = [
        merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if redact:
        chain.append(redact_secrets)
    return chain


def json_formatter(redact: bool = True) -> structlog.stdlib.ProcessorFormatter:
    """Formatter rendering stdlib and structlog records as one JSON object per line."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_chain(redact),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(default=str),
        ],
    )


def setup_logging(
    level: str = "info",
    fmt: str = "json",
    log_dir: Optional[str] = None,
    redact: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 10,
) -> logging.Logger:
    """
    Route structlog through stdlib logging and install the process handlers.

    Args:
        level: pipewatch or stdlib level name.
        fmt: ``"json"`` or ``"text"`` for the console handler. The file
            handler always writes JSON.
        log_dir: Directory for ``pipewatch.log``; no file handler when None.
        redact: Mask secret-looking keys.
        max_bytes: Rotation size of the log file.
        backup_count: Rotated files kept.

    Returns:
        The configured root logger.
    """
    numeric_level = _level_number(level)

    structlog.configure(
        processors=_shared_chain(redact) + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(numeric_level)

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(json_formatter(redact))
    else:
        console.setFormatter(structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_shared_chain(redact),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=False),
            ],
        ))
    root.addHandler(console)

    if log_dir is not None:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            directory / LOG_FILE_NAME,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(json_formatter(redact))
        root.addHandler(file_handler)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def configure_logging(config: LoggingConfig, debug: bool = False, level: Optional[str] = None) -> logging.Logger:
    """setup_logging driven by the ``logging`` config section."""
    return setup_logging(
        level="debug" if debug else (level or config.level),
        fmt="text" if debug else "json",
        log_dir=config.log_directory if config.enable_file else None,
        backup_count=config.max_files,
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


# =============================================================================
# CONTEXT BINDING
# =============================================================================

@contextmanager
def log_context(**values: Any) -> Iterator[Dict[str, Any]]:
    """
    Bind *values* to every log line written inside the block.

    Keys already bound by an enclosing block are restored on exit, so nested
    blocks may rebind ``correlation_id`` safely.
    """
    outer = get_contextvars()
    shadowed = {key: outer[key] for key in values if key in outer}
    bind_contextvars(**values)
    try:
        yield values
    finally:
        unbind_contextvars(*values)
        if shadowed:
            bind_contextvars(**shadowed)


@contextmanager
def correlation_context(correlation_id: str, **extra: Any) -> Iterator[str]:
    with log_context(**{CORRELATION_KEY: correlation_id}, **extra):
        yield correlation_id


def current_correlation_id() -> Optional[str]:
    return get_contextvars().get(CORRELATION_KEY)


__all__ = [
    "CORRELATION_KEY",
    "configure_logging",
    "correlation_context",
    "current_correlation_id",
    "get_logger",
    "json_formatter",
    "log_context",
    "mask_dict",
    "redact_secrets",
    "setup_logging",
]
