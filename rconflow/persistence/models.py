"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import WorkflowDefinition
from ..exceptions import InvalidStatusTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


ExecutionStatus = Literal["pending", "running", "completed", "failed", "error"]
StepStatus = Literal["running", "completed", "failed", "error"]
MessageLevel = Literal["DEBUG", "INFO", "WARN", "ERROR"]

TERMINAL_STATUSES = frozenset({"completed", "failed", "error"})

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "completed", "failed", "error"}),
    "running": TERMINAL_STATUSES,
    "completed": frozenset(),
    "failed": frozenset(),
    "error": frozenset(),
}


class Workflow(BaseModel):
    """A stored workflow and its current definition."""

    id: str = Field(default_factory=new_id)
    server_id: str
    name: str
    description: Optional[str] = None
    enabled: bool = True
    definition: WorkflowDefinition = Field(default_factory=WorkflowDefinition)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Execution(BaseModel):
    """One run of a workflow, started by a single event."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    server_id: str
    trigger_id: Optional[str] = None
    event_type: str
    status: ExecutionStatus = "pending"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: str, error: Optional[str] = None) -> None:
        """Move to ``status``; statuses only ever move forward."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransition(self.status, status)
        self.status = status  # type: ignore[assignment]
        if status in TERMINAL_STATUSES:
            self.completed_at = utcnow()
            self.error = error


class ExecutionLog(BaseModel):
    """Append-only record of a single step attempt."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    workflow_id: str
    step_id: str
    step_order: int
    attempt: int = 1
    step_name: str
    step_type: str
    step_status: StepStatus
    step_input: dict[str, Any] = Field(default_factory=dict)
    step_output: Optional[Any] = None
    step_duration_ms: Optional[int] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class LogMessage(BaseModel):
    """A message written by a workflow (log_message action or Lua ``log``)."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    workflow_id: str
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    log_time: datetime = Field(default_factory=utcnow)
    log_level: MessageLevel = "INFO"
    message: str
    variables: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class KVEntry(BaseModel):
    workflow_id: str
    key: str
    value: Any = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
