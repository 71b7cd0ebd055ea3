"""Repository abstraction for workflow persistence."""

from __future__ import annotations

from typing import Any, Protocol

from ..constants import STEP_STATUS_ORDER
from .models import Execution, ExecutionLog, KVEntry, LogMessage, Workflow


def log_sort_key(log: ExecutionLog) -> tuple[int, int, int]:
    """Ordering of execution logs: visit, attempt, running before terminal."""
    return (log.step_order, log.attempt, STEP_STATUS_ORDER.get(log.step_status, 1))


class WorkflowRepository(Protocol):
    """Protocol for workflow persistence backends."""

    # workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        """Persist a new workflow."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(
        self, server_id: str | None = None, enabled_only: bool = False
    ) -> list[Workflow]:
        """Return workflows ordered by creation time."""

    async def update_workflow(self, workflow: Workflow) -> Workflow:
        """Overwrite a stored workflow."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow with its executions, logs and KV entries."""

    # executions
    async def create_execution(self, execution: Execution) -> Execution:
        """Persist a new execution."""

    async def update_execution(self, execution: Execution) -> None:
        """Persist status and counters of an execution."""

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self, workflow_id: str, limit: int = 100, offset: int = 0
    ) -> list[Execution]:
        """Return executions of a workflow, newest first."""

    # step logs and messages
    async def append_execution_log(self, log: ExecutionLog) -> None:
        """Append a step attempt row."""

    async def list_execution_logs(
        self, execution_id: str, limit: int = 100, offset: int = 0
    ) -> list[ExecutionLog]:
        """Return step rows ordered by step_order and attempt."""

    async def append_log_message(self, message: LogMessage) -> None:
        """Append a workflow log message."""

    async def list_log_messages(
        self, execution_id: str, limit: int = 100, offset: int = 0
    ) -> list[LogMessage]:
        """Return log messages in write order."""

    # key-value store
    async def kv_get(self, workflow_id: str, key: str) -> KVEntry | None:
        """Return an entry or ``None``."""

    async def kv_set(self, workflow_id: str, key: str, value: Any) -> KVEntry:
        """Insert or overwrite an entry."""

    async def kv_delete(self, workflow_id: str, key: str) -> bool:
        """Delete an entry, returning whether it existed."""

    async def kv_list(self, workflow_id: str) -> list[KVEntry]:
        """Return all entries of a workflow ordered by key."""

    async def kv_clear(self, workflow_id: str) -> int:
        """Delete all entries of a workflow, returning the count."""
