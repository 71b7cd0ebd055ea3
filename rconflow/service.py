"""Dashboard-facing operations on workflows, executions and KV entries."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .constants import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from .contracts import parse_definition
from .exceptions import NotFoundError
from .ingest import EventIngestAdapter, RawEvent
from .persistence.models import Execution, ExecutionLog, KVEntry, LogMessage, Workflow, utcnow
from .persistence.repository import WorkflowRepository
from .scheduler import WorkflowOrchestrator

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "enabled", "definition")


def clamp_pagination(limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
    """Out of range limits fall back to the default, negative offsets to 0."""
    if limit is None or limit < 1 or limit > MAX_PAGE_LIMIT:
        limit = DEFAULT_PAGE_LIMIT
    if offset is None or offset < 0:
        offset = 0
    return limit, offset


class WorkflowService:
    """Scope checks and CRUD on top of the repository and orchestrator."""

    def __init__(
        self,
        repository: WorkflowRepository,
        orchestrator: WorkflowOrchestrator,
        ingest: Optional[EventIngestAdapter] = None,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.ingest = ingest or EventIngestAdapter()

    # ------------------------------------------------------------------
    # Workflows
    async def list_workflows(self, server_id: str) -> List[Workflow]:
        return await self.repository.list_workflows(server_id=server_id)

    async def get_workflow(self, server_id: str, workflow_id: str) -> Workflow:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None or workflow.server_id != server_id:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def create_workflow(
        self,
        server_id: str,
        name: str,
        definition: Any,
        description: Optional[str] = None,
        enabled: bool = True,
        created_by: Optional[str] = None,
    ) -> Workflow:
        workflow = Workflow(
            server_id=server_id,
            name=name,
            description=description,
            enabled=enabled,
            definition=parse_definition(definition),
            created_by=created_by,
        )
        await self.repository.create_workflow(workflow)
        logger.info(f"Created workflow {workflow.id} ({name}) on server {server_id}")
        return workflow

    async def update_workflow(
        self, server_id: str, workflow_id: str, changes: Mapping[str, Any]
    ) -> Workflow:
        """Apply a partial update. ``updated_at`` always moves forward."""
        workflow = await self.get_workflow(server_id, workflow_id)
        for field in UPDATABLE_FIELDS:
            if field not in changes:
                continue
            value = changes[field]
            if field == "definition":
                value = parse_definition(value)
            elif field in ("name", "enabled") and value is None:
                continue
            setattr(workflow, field, value)
        workflow.updated_at = utcnow()
        await self.repository.update_workflow(workflow)
        return workflow

    async def set_enabled(self, server_id: str, workflow_id: str, enabled: bool) -> Workflow:
        return await self.update_workflow(server_id, workflow_id, {"enabled": enabled})

    async def delete_workflow(self, server_id: str, workflow_id: str) -> None:
        await self.get_workflow(server_id, workflow_id)
        await self.repository.delete_workflow(workflow_id)
        logger.info(f"Deleted workflow {workflow_id} on server {server_id}")

    # ------------------------------------------------------------------
    # Executions
    async def execute(
        self,
        server_id: str,
        workflow_id: str,
        trigger_event: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
    ) -> Execution:
        workflow = await self.get_workflow(server_id, workflow_id)
        return await self.orchestrator.execute_manually(
            workflow, payload=trigger_event, variables=variables, triggered_by=triggered_by
        )

    async def list_executions(
        self,
        server_id: str,
        workflow_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Execution]:
        await self.get_workflow(server_id, workflow_id)
        limit, offset = clamp_pagination(limit, offset)
        return await self.repository.list_executions(workflow_id, limit=limit, offset=offset)

    async def get_execution(
        self, server_id: str, workflow_id: str, execution_id: str
    ) -> Execution:
        await self.get_workflow(server_id, workflow_id)
        execution = await self.repository.get_execution(execution_id)
        if execution is None or execution.workflow_id != workflow_id:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def list_execution_logs(
        self,
        server_id: str,
        workflow_id: str,
        execution_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[ExecutionLog]:
        await self.get_execution(server_id, workflow_id, execution_id)
        limit, offset = clamp_pagination(limit, offset)
        return await self.repository.list_execution_logs(
            execution_id, limit=limit, offset=offset
        )

    async def list_log_messages(
        self,
        server_id: str,
        workflow_id: str,
        execution_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[LogMessage]:
        await self.get_execution(server_id, workflow_id, execution_id)
        limit, offset = clamp_pagination(limit, offset)
        return await self.repository.list_log_messages(
            execution_id, limit=limit, offset=offset
        )

    # ------------------------------------------------------------------
    # Key-value store
    async def kv_list(self, server_id: str, workflow_id: str) -> List[KVEntry]:
        await self.get_workflow(server_id, workflow_id)
        return await self.repository.kv_list(workflow_id)

    async def kv_get(self, server_id: str, workflow_id: str, key: str) -> KVEntry:
        await self.get_workflow(server_id, workflow_id)
        entry = await self.repository.kv_get(workflow_id, key)
        if entry is None:
            raise NotFoundError(f"Key {key!r} not found")
        return entry

    async def kv_set(self, server_id: str, workflow_id: str, key: str, value: Any) -> KVEntry:
        await self.get_workflow(server_id, workflow_id)
        return await self.repository.kv_set(workflow_id, key, value)

    async def kv_delete(self, server_id: str, workflow_id: str, key: str) -> None:
        await self.get_workflow(server_id, workflow_id)
        if not await self.repository.kv_delete(workflow_id, key):
            raise NotFoundError(f"Key {key!r} not found")

    # ------------------------------------------------------------------
    # Events
    async def ingest_event(self, server_id: str, raw: RawEvent) -> List[Execution]:
        event = self.ingest.normalize(raw, server_id=server_id)
        return await self.orchestrator.on_event(event)
