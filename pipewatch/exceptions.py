# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - EXCEPTIONS
# =============================================================================
"""
Exceptions

Error taxonomy shared by every pipewatch component.

    - ValidationError: malformed input rejected at the API boundary
    - TransientIOError: sink or channel I/O failure, handled inside the pipeline
    - LogicError: invalid lifecycle transition, reported as a failed Outcome

Lifecycle operations never raise LogicError themselves. They return an
Outcome holding it, so producers can ignore it, branch on it or raise it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


# =============================================================================
# EXCEPTIONS
# =============================================================================

class PipewatchError(Exception):
    """Base exception for pipewatch."""
    pass


class ValidationError(PipewatchError):
    """Raised when API input is malformed. Nothing is stored."""
    pass


class TransientIOError(PipewatchError):
    """Raised by sinks and channels when delivery fails."""

    def __init__(self, message: str, target: str = ""):
        super().__init__(message)
        self.target = target


class LogicError(PipewatchError):
    """Invalid state transition (alert or span lifecycle)."""
    pass


# =============================================================================
# OUTCOME
# =============================================================================

@dataclass(frozen=True)
class Outcome:
    """
    Non-fatal status returned by lifecycle operations.

    A failed outcome carries the LogicError it stands for; callers that
    prefer exceptions can call raise_for_error().
    """
    ok: bool
    reason: str = ""
    value: Any = None
    error: Optional[LogicError] = field(default=None, compare=False)

    def __bool__(self) -> bool:
        return self.ok

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    @classmethod
    def success(cls, value: Any = None, reason: str = "") -> "Outcome":
        return cls(True, reason, value)

    @classmethod
    def failure(cls, reason: str, value: Any = None) -> "Outcome":
        return cls(False, reason, value, LogicError(reason))


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "PipewatchError",
    "ValidationError",
    "TransientIOError",
    "LogicError",
    "Outcome",
]
