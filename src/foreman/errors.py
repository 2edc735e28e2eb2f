from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    # validation
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    DEPENDENCY_UNMET = "DEPENDENCY_UNMET"
    NO_ACTIVE_EPIC = "NO_ACTIVE_EPIC"
    EPIC_NOT_FOUND = "EPIC_NOT_FOUND"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    TASK_LIMIT_REACHED = "TASK_LIMIT_REACHED"
    DUPLICATE_TASK = "DUPLICATE_TASK"
    UNKNOWN_DEPENDENCY = "UNKNOWN_DEPENDENCY"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_LEARNING = "INVALID_LEARNING"
    INVALID_HANDOFF = "INVALID_HANDOFF"
    NO_TASKS = "NO_TASKS"
    INVALID_MODE = "INVALID_MODE"
    UNKNOWN_ENTRY = "UNKNOWN_ENTRY"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    # transport / host
    SPAWN_FAILED = "SPAWN_FAILED"
    TIMED_OUT = "TIMED_OUT"
    STALE = "STALE"
    # storage
    LOCK_TIMEOUT = "LOCK_TIMEOUT"


@dataclass(slots=True)
class Failure:
    """Structured failure returned across the public API boundary."""

    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": str(self.code),
            "message": self.message,
            **({"details": dict(self.details)} if self.details else {}),
        }


class ForemanError(RuntimeError):
    """Base error carrying a machine-readable code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = dict(details or {})

    def to_failure(self) -> Failure:
        return Failure(code=self.code, message=str(self), details=dict(self.details))


class LedgerError(ForemanError):
    """Raised when a ledger operation is rejected."""


class RegistryError(ForemanError):
    """Raised when a registry lookup or transition is rejected."""


class DialogueError(ForemanError):
    """Raised on an illegal dialogue state transition."""
