"""REST API consumed by the moderation dashboard.

Authentication happens upstream; the caller identity arrives in the
``X-User-Id`` header and is trusted as-is.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .exceptions import IngestError, NotFoundError, WorkflowDefinitionError
from .service import WorkflowService, clamp_pagination


class WorkflowCreate(BaseModel):
    name: str
    description: Optional[str] = None
    enabled: bool = True
    definition: Dict[str, Any] = {}


class WorkflowUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None
    definition: Optional[Dict[str, Any]] = None


class ExecuteRequest(BaseModel):
    trigger_event: Dict[str, Any] = {}
    variables: Dict[str, Any] = {}


class KVValue(BaseModel):
    value: Any = None


def get_service(request: Request) -> WorkflowService:
    return request.app.state.service


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json")


router = APIRouter(prefix="/servers/{server_id}", tags=["workflows"])


# Workflows
@router.get("/workflows")
async def list_workflows(
    server_id: str, service: WorkflowService = Depends(get_service)
) -> Dict[str, Any]:
    workflows = await service.list_workflows(server_id)
    return {"workflows": [_dump(w) for w in workflows]}


@router.post("/workflows", status_code=status.HTTP_201_CREATED)
async def create_workflow(
    server_id: str,
    body: WorkflowCreate,
    service: WorkflowService = Depends(get_service),
    x_user_id: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    workflow = await service.create_workflow(
        server_id,
        name=body.name,
        description=body.description,
        enabled=body.enabled,
        definition=body.definition,
        created_by=x_user_id,
    )
    return {"workflow": _dump(workflow)}


@router.get("/workflows/{workflow_id}")
async def get_workflow(
    server_id: str, workflow_id: str, service: WorkflowService = Depends(get_service)
) -> Dict[str, Any]:
    return {"workflow": _dump(await service.get_workflow(server_id, workflow_id))}


@router.put("/workflows/{workflow_id}")
async def update_workflow(
    server_id: str,
    workflow_id: str,
    body: WorkflowUpdate,
    service: WorkflowService = Depends(get_service),
) -> Dict[str, Any]:
    workflow = await service.update_workflow(
        server_id, workflow_id, body.model_dump(exclude_unset=True)
    )
    return {"workflow": _dump(workflow)}


@router.delete("/workflows/{workflow_id}")
async def delete_workflow(
    server_id: str, workflow_id: str, service: WorkflowService = Depends(get_service)
) -> Dict[str, Any]:
    await service.delete_workflow(server_id, workflow_id)
    return {"deleted": workflow_id}


# Executions
@router.post("/workflows/{workflow_id}/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute_workflow(
    server_id: str,
    workflow_id: str,
    body: ExecuteRequest,
    wait: bool = False,
    service: WorkflowService = Depends(get_service),
    x_user_id: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    execution = await service.execute(
        server_id,
        workflow_id,
        trigger_event=body.trigger_event,
        variables=body.variables,
        triggered_by=x_user_id,
    )
    if wait:
        await service.orchestrator.wait_for(execution.id)
        execution = await service.get_execution(server_id, workflow_id, execution.id)
    return {"execution": _dump(execution)}


@router.get("/workflows/{workflow_id}/executions")
async def list_executions(
    server_id: str,
    workflow_id: str,
    limit: int = 100,
    offset: int = 0,
    service: WorkflowService = Depends(get_service),
) -> Dict[str, Any]:
    limit, offset = clamp_pagination(limit, offset)
    executions = await service.list_executions(server_id, workflow_id, limit, offset)
    return {
        "executions": [_dump(e) for e in executions],
        "limit": limit,
        "offset": offset,
    }


@router.get("/workflows/{workflow_id}/executions/{execution_id}")
async def get_execution(
    server_id: str,
    workflow_id: str,
    execution_id: str,
    service: WorkflowService = Depends(get_service),
) -> Dict[str, Any]:
    execution = await service.get_execution(server_id, workflow_id, execution_id)
    return {"execution": _dump(execution)}


@router.get("/workflows/{workflow_id}/executions/{execution_id}/logs")
async def list_execution_logs(
    server_id: str,
    workflow_id: str,
    execution_id: str,
    limit: int = 100,
    offset: int = 0,
    service: WorkflowService = Depends(get_service),
) -> Dict[str, Any]:
    limit, offset = clamp_pagination(limit, offset)
    logs = await service.list_execution_logs(
        server_id, workflow_id, execution_id, limit, offset
    )
    return {"logs": [_dump(log) for log in logs], "limit": limit, "offset": offset}


@router.get("/workflows/{workflow_id}/executions/{execution_id}/messages")
async def list_log_messages(
    server_id: str,
    workflow_id: str,
    execution_id: str,
    limit: int = 100,
    offset: int = 0,
    service: WorkflowService = Depends(get_service),
) -> Dict[str, Any]:
    limit, offset = clamp_pagination(limit, offset)
    messages = await service.list_log_messages(
        server_id, workflow_id, execution_id, limit, offset
    )
    return {"messages": [_dump(m) for m in messages], "limit": limit, "offset": offset}


# Key-value store
@router.get("/workflows/{workflow_id}/kv")
async def kv_list(
    server_id: str, workflow_id: str, service: WorkflowService = Depends(get_service)
) -> Dict[str, Any]:
    entries = await service.kv_list(server_id, workflow_id)
    return {"entries": [_dump(e) for e in entries]}


@router.get("/workflows/{workflow_id}/kv/{key}")
async def kv_get(
    server_id: str,
    workflow_id: str,
    key: str,
    service: WorkflowService = Depends(get_service),
) -> Dict[str, Any]:
    return {"entry": _dump(await service.kv_get(server_id, workflow_id, key))}


@router.put("/workflows/{workflow_id}/kv/{key}")
async def kv_set(
    server_id: str,
    workflow_id: str,
    key: str,
    body: KVValue,
    service: WorkflowService = Depends(get_service),
) -> Dict[str, Any]:
    entry = await service.kv_set(server_id, workflow_id, key, body.value)
    return {"entry": _dump(entry)}


@router.delete("/workflows/{workflow_id}/kv/{key}")
async def kv_delete(
    server_id: str,
    workflow_id: str,
    key: str,
    service: WorkflowService = Depends(get_service),
) -> Dict[str, Any]:
    await service.kv_delete(server_id, workflow_id, key)
    return {"deleted": key}


# Event ingestion
@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    server_id: str,
    event: Dict[str, Any],
    wait: bool = False,
    service: WorkflowService = Depends(get_service),
) -> Dict[str, Any]:
    executions = await service.ingest_event(server_id, event)
    if wait:
        for execution in executions:
            await service.orchestrator.wait_for(execution.id)
        executions = [
            await service.get_execution(server_id, e.workflow_id, e.id) for e in executions
        ]
    return {"executions": [_dump(e) for e in executions]}


def create_app(service: WorkflowService) -> FastAPI:
    """Build the FastAPI application around ``service``."""
    app = FastAPI(title="rconflow", description="Workflow execution engine API")
    app.state.service = service
    app.include_router(router)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(WorkflowDefinitionError)
    async def _invalid_definition(
        request: Request, exc: WorkflowDefinitionError
    ) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(IngestError)
    async def _invalid_event(request: Request, exc: IngestError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    return app
