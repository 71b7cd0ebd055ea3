"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

from .models import Execution, ExecutionLog, KVEntry, LogMessage, Workflow, utcnow
from .repository import WorkflowRepository, log_sort_key


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored models are copied on the way
    in and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, Execution] = {}
        self._logs: Dict[str, List[ExecutionLog]] = {}
        self._messages: Dict[str, List[LogMessage]] = {}
        self._kv: Dict[Tuple[str, str], KVEntry] = {}

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self, server_id: str | None = None, enabled_only: bool = False
    ) -> list[Workflow]:
        workflows = [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (server_id is None or wf.server_id == server_id)
            and (not enabled_only or wf.enabled)
        ]
        workflows.sort(key=lambda wf: wf.created_at)
        return workflows

    async def update_workflow(self, workflow: Workflow) -> Workflow:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def delete_workflow(self, workflow_id: str) -> bool:
        if self._workflows.pop(workflow_id, None) is None:
            return False
        for execution_id in [
            e.id for e in self._executions.values() if e.workflow_id == workflow_id
        ]:
            del self._executions[execution_id]
            self._logs.pop(execution_id, None)
            self._messages.pop(execution_id, None)
        await self.kv_clear(workflow_id)
        return True

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: Execution) -> Execution:
        self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def update_execution(self, execution: Execution) -> None:
        if execution.id in self._executions:
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self, workflow_id: str, limit: int = 100, offset: int = 0
    ) -> list[Execution]:
        executions = [e for e in self._executions.values() if e.workflow_id == workflow_id]
        executions.sort(key=lambda e: e.started_at, reverse=True)
        return [e.model_copy(deep=True) for e in executions[offset : offset + limit]]

    # ------------------------------------------------------------------
    # Logs and messages
    async def append_execution_log(self, log: ExecutionLog) -> None:
        self._logs.setdefault(log.execution_id, []).append(log.model_copy(deep=True))

    async def list_execution_logs(
        self, execution_id: str, limit: int = 100, offset: int = 0
    ) -> list[ExecutionLog]:
        logs = sorted(self._logs.get(execution_id, []), key=log_sort_key)
        return [log.model_copy(deep=True) for log in logs[offset : offset + limit]]

    async def append_log_message(self, message: LogMessage) -> None:
        self._messages.setdefault(message.execution_id, []).append(
            message.model_copy(deep=True)
        )

    async def list_log_messages(
        self, execution_id: str, limit: int = 100, offset: int = 0
    ) -> list[LogMessage]:
        messages = self._messages.get(execution_id, [])
        return [m.model_copy(deep=True) for m in messages[offset : offset + limit]]

    # ------------------------------------------------------------------
    # Key-value store
    async def kv_get(self, workflow_id: str, key: str) -> KVEntry | None:
        entry = self._kv.get((workflow_id, key))
        return entry.model_copy(deep=True) if entry else None

    async def kv_set(self, workflow_id: str, key: str, value: Any) -> KVEntry:
        now = utcnow()
        existing = self._kv.get((workflow_id, key))
        entry = KVEntry(
            workflow_id=workflow_id,
            key=key,
            value=value,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self._kv[(workflow_id, key)] = entry
        return entry.model_copy(deep=True)

    async def kv_delete(self, workflow_id: str, key: str) -> bool:
        return self._kv.pop((workflow_id, key), None) is not None

    async def kv_list(self, workflow_id: str) -> list[KVEntry]:
        entries = [e for (wf_id, _), e in self._kv.items() if wf_id == workflow_id]
        entries.sort(key=lambda e: e.key)
        return [e.model_copy(deep=True) for e in entries]

    async def kv_clear(self, workflow_id: str) -> int:
        keys = [k for k in self._kv if k[0] == workflow_id]
        for k in keys:
            del self._kv[k]
        return len(keys)
