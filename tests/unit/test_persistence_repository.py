from datetime import timedelta

import pytest

from rconflow.contracts import parse_definition
from rconflow.exceptions import InvalidStatusTransition
from rconflow.persistence import (
    Execution,
    ExecutionLog,
    InMemoryWorkflowRepository,
    LogMessage,
    SQLiteWorkflowRepository,
    Workflow,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "rconflow.db")
    return InMemoryWorkflowRepository()


def _workflow(server_id="server-1", enabled=True):
    return Workflow(
        server_id=server_id,
        name="kick unassigned",
        enabled=enabled,
        definition=parse_definition(
            {
                "triggers": [{"id": "t1", "event_type": "LOG_PLAYER_CONNECTED"}],
                "steps": [
                    {
                        "id": "kick",
                        "type": "action",
                        "config": {"action_type": "kick_player", "player_id": "${steam_id}"},
                    }
                ],
            }
        ),
    )


def _log(execution, step_id, order, attempt, status):
    return ExecutionLog(
        execution_id=execution.id,
        workflow_id=execution.workflow_id,
        step_id=step_id,
        step_order=order,
        attempt=attempt,
        step_name=step_id,
        step_type="action",
        step_status=status,
        step_output={"n": order},
    )


@pytest.mark.asyncio
async def test_workflow_crud(repository):
    wf = _workflow()
    other = _workflow(server_id="server-2", enabled=False)
    await repository.create_workflow(wf)
    await repository.create_workflow(other)

    loaded = await repository.get_workflow(wf.id)
    assert loaded is not None
    assert loaded.definition == wf.definition
    assert loaded.definition.steps[0].config.player_id == "${steam_id}"

    assert [w.id for w in await repository.list_workflows(server_id="server-1")] == [wf.id]
    assert [w.id for w in await repository.list_workflows(enabled_only=True)] == [wf.id]

    loaded.name = "renamed"
    loaded.enabled = False
    await repository.update_workflow(loaded)
    updated = await repository.get_workflow(wf.id)
    assert (updated.name, updated.enabled) == ("renamed", False)

    assert await repository.delete_workflow(wf.id) is True
    assert await repository.get_workflow(wf.id) is None
    assert await repository.delete_workflow(wf.id) is False


@pytest.mark.asyncio
async def test_execution_lifecycle(repository):
    wf = _workflow()
    await repository.create_workflow(wf)
    first = Execution(workflow_id=wf.id, server_id=wf.server_id, event_type="MANUAL_TRIGGER")
    second = Execution(
        workflow_id=wf.id,
        server_id=wf.server_id,
        event_type="MANUAL_TRIGGER",
        started_at=first.started_at + timedelta(seconds=1),
    )
    first.transition("running")
    await repository.create_execution(first)
    await repository.create_execution(second)

    first.completed_steps = 2
    first.transition("failed", "kick failed")
    await repository.update_execution(first)

    stored = await repository.get_execution(first.id)
    assert stored.status == "failed"
    assert stored.error == "kick failed"
    assert stored.completed_steps == 2
    assert stored.completed_at is not None

    listed = await repository.list_executions(wf.id)
    assert [e.id for e in listed] == [second.id, first.id]
    assert [e.id for e in await repository.list_executions(wf.id, limit=1, offset=1)] == [
        first.id
    ]


def test_status_never_moves_backwards():
    execution = Execution(workflow_id="wf", server_id="s", event_type="MANUAL_TRIGGER")
    execution.transition("running")
    execution.transition("completed")
    with pytest.raises(InvalidStatusTransition):
        execution.transition("running")
    assert execution.is_terminal


@pytest.mark.asyncio
async def test_execution_logs_are_ordered_by_visit_and_attempt(repository):
    wf = _workflow()
    await repository.create_workflow(wf)
    execution = Execution(workflow_id=wf.id, server_id=wf.server_id, event_type="MANUAL_TRIGGER")
    await repository.create_execution(execution)

    await repository.append_execution_log(_log(execution, "b", 2, 1, "completed"))
    await repository.append_execution_log(_log(execution, "a", 1, 2, "completed"))
    await repository.append_execution_log(_log(execution, "a", 1, 1, "failed"))
    await repository.append_execution_log(_log(execution, "a", 1, 2, "running"))

    logs = await repository.list_execution_logs(execution.id)
    assert [(log.step_order, log.attempt, log.step_status) for log in logs] == [
        (1, 1, "failed"),
        (1, 2, "running"),
        (1, 2, "completed"),
        (2, 1, "completed"),
    ]
    assert logs[-1].step_output == {"n": 2}
    assert len(await repository.list_execution_logs(execution.id, limit=2, offset=1)) == 2


@pytest.mark.asyncio
async def test_log_messages(repository):
    wf = _workflow()
    await repository.create_workflow(wf)
    execution = Execution(workflow_id=wf.id, server_id=wf.server_id, event_type="MANUAL_TRIGGER")
    await repository.create_execution(execution)
    for text in ("first", "second"):
        await repository.append_log_message(
            LogMessage(
                execution_id=execution.id,
                workflow_id=wf.id,
                message=text,
                log_level="WARN",
                variables={"x": 1},
            )
        )
    messages = await repository.list_log_messages(execution.id)
    assert [m.message for m in messages] == ["first", "second"]
    assert messages[0].variables == {"x": 1}


@pytest.mark.asyncio
async def test_kv_upsert_and_scope(repository):
    wf = _workflow()
    other = _workflow()
    await repository.create_workflow(wf)
    await repository.create_workflow(other)

    created = await repository.kv_set(wf.id, "strikes:765", 1)
    updated = await repository.kv_set(wf.id, "strikes:765", {"count": 2})
    await repository.kv_set(other.id, "strikes:765", 9)

    assert updated.value == {"count": 2}
    assert updated.created_at == created.created_at
    assert updated.updated_at >= created.updated_at
    assert (await repository.kv_get(other.id, "strikes:765")).value == 9
    assert [e.key for e in await repository.kv_list(wf.id)] == ["strikes:765"]

    assert await repository.kv_delete(wf.id, "strikes:765") is True
    assert await repository.kv_get(wf.id, "strikes:765") is None
    assert await repository.kv_clear(other.id) == 1


@pytest.mark.asyncio
async def test_deleting_workflow_removes_its_data(repository):
    wf = _workflow()
    await repository.create_workflow(wf)
    execution = Execution(workflow_id=wf.id, server_id=wf.server_id, event_type="MANUAL_TRIGGER")
    await repository.create_execution(execution)
    await repository.append_execution_log(_log(execution, "a", 1, 1, "completed"))
    await repository.kv_set(wf.id, "k", "v")

    await repository.delete_workflow(wf.id)

    assert await repository.get_execution(execution.id) is None
    assert await repository.list_execution_logs(execution.id) == []
    assert await repository.kv_list(wf.id) == []


@pytest.mark.asyncio
async def test_sqlite_repository_survives_reopen(tmp_path):
    path = tmp_path / "rconflow.db"
    wf = _workflow()
    await SQLiteWorkflowRepository(path).create_workflow(wf)
    await SQLiteWorkflowRepository(path).kv_set(wf.id, "k", [1, 2])

    reopened = SQLiteWorkflowRepository(path)
    assert (await reopened.get_workflow(wf.id)).name == "kick unassigned"
    assert (await reopened.kv_get(wf.id, "k")).value == [1, 2]
