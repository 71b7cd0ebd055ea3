from typing import Any, Dict, List, Optional

import pytest

import rconflow.persistence as persistence
from rconflow.actions import ActionContext
from rconflow.config import EngineConfig
from rconflow.contracts import parse_definition
from rconflow.persistence import Execution, InMemoryWorkflowRepository, Workflow
from rconflow.recorder import ExecutionRecorder
from rconflow.scheduler import WorkflowOrchestrator
from rconflow.variables import KVStore, VariableStore

SERVER_ID = "server-1"


class FakeRcon:
    """RCON executor that records commands and fails the first ``fail`` calls."""

    def __init__(self, fail: int = 0, response: str = "ok") -> None:
        self.fail = fail
        self.response = response
        self.commands: List[str] = []

    async def execute(self, server_id: str, command: str) -> str:
        self.commands.append(command)
        if self.fail:
            self.fail -= 1
            raise ConnectionError("rcon connection refused")
        return self.response


class FakeBanService:
    def __init__(self) -> None:
        self.bans: List[Dict[str, Any]] = []

    async def ban_with_evidence(self, **kwargs: Any) -> Any:
        self.bans.append(kwargs)
        return {"ban_id": len(self.bans)}


def trigger(event_type: str = "RCON_CHAT_MESSAGE", **kwargs: Any) -> Dict[str, Any]:
    return {"id": "t1", "event_type": event_type, **kwargs}


@pytest.fixture(autouse=True)
def _reset_repository_instance():
    persistence._repository_instance = None
    persistence._repository_url = None
    yield
    persistence._repository_instance = None
    persistence._repository_url = None


@pytest.fixture
def repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def rcon() -> FakeRcon:
    return FakeRcon()


@pytest.fixture
def ban_service() -> FakeBanService:
    return FakeBanService()


@pytest.fixture
def make_workflow(repo):
    """Store a workflow built from ``steps`` (and optional definition fields)."""

    async def _make(
        steps: Optional[List[Dict[str, Any]]] = None,
        triggers: Optional[List[Dict[str, Any]]] = None,
        server_id: str = SERVER_ID,
        enabled: bool = True,
        **definition: Any,
    ) -> Workflow:
        workflow = Workflow(
            server_id=server_id,
            name="test workflow",
            enabled=enabled,
            definition=parse_definition(
                {
                    "version": "1.0",
                    "triggers": triggers if triggers is not None else [trigger()],
                    "steps": steps or [],
                    **definition,
                }
            ),
        )
        await repo.create_workflow(workflow)
        return workflow

    return _make


@pytest.fixture
def orchestrator_factory(repo, rcon, ban_service):
    def _make(**engine: Any) -> WorkflowOrchestrator:
        engine.setdefault("persistence_retries", 1)
        return WorkflowOrchestrator(
            repo, engine=EngineConfig(**engine), rcon=rcon, ban_service=ban_service
        )

    return _make


@pytest.fixture
def run_workflow(repo, orchestrator_factory):
    """Run a workflow manually to completion and return the stored execution."""

    async def _run(
        workflow: Workflow,
        payload: Optional[Dict[str, Any]] = None,
        orchestrator: Optional[WorkflowOrchestrator] = None,
        **kwargs: Any,
    ) -> Execution:
        orchestrator = orchestrator or orchestrator_factory()
        started = await orchestrator.execute_manually(workflow, payload=payload, **kwargs)
        await orchestrator.wait_for(started.id)
        execution = await repo.get_execution(started.id)
        assert execution is not None
        return execution

    return _run


@pytest.fixture
def action_context(repo, rcon):
    def _make(**overrides: Any) -> ActionContext:
        fields: Dict[str, Any] = {
            "execution_id": "exec-1",
            "workflow_id": "wf-1",
            "server_id": SERVER_ID,
            "variables": VariableStore(),
            "kv": KVStore(repo, "wf-1"),
            "recorder": ExecutionRecorder(repo, attempts=1),
            "step_id": "step-1",
            "step_name": "step-1",
            "rcon": rcon,
        }
        fields.update(overrides)
        return ActionContext(**fields)

    return _make
