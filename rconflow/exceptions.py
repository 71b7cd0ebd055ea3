"""Exception hierarchy for rconflow."""

from __future__ import annotations

from typing import Any, Optional


class RconflowError(Exception):
    """Base class for all rconflow errors."""


class WorkflowDefinitionError(RconflowError):
    """Raised when a workflow definition is invalid or unsupported."""


class ConditionError(RconflowError):
    """Raised when a condition cannot be evaluated."""


class IngestError(RconflowError):
    """Raised when an upstream event cannot be normalized."""


class NotFoundError(RconflowError):
    """Raised when a requested record does not exist."""


class InvalidStatusTransition(RconflowError):
    """Raised when an execution status would move backwards."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot transition execution from {current} to {requested}")
        self.current = current
        self.requested = requested


class StepFailed(RconflowError):
    """A workflow step failed.

    ``retryable`` tells the executor whether another attempt could succeed.
    Configuration problems are never retryable.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        kind: str = "step",
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.kind = kind
        self.detail = detail or {}


class ActionConfigError(StepFailed):
    """An action or step config is missing required values."""

    def __init__(self, message: str, detail: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, retryable=False, kind="configuration", detail=detail)


class StepTimeout(StepFailed):
    """A single step attempt exceeded its time budget."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True, kind="timeout")


class ExecutionAborted(RconflowError):
    """The engine stopped an execution (timeout, loop guard, internal error)."""
