"""Step executor behaviour, run end to end through manual executions."""

import pytest

from rconflow.contracts import ErrorHandling, parse_definition
from rconflow.steps import resolve_policy


def log_step(step_id, message=None, **extra):
    return {
        "id": step_id,
        "type": "action",
        "config": {"action_type": "log_message", "message": message or step_id},
        **extra,
    }


def kick_step(step_id="kick", **extra):
    return {
        "id": step_id,
        "type": "action",
        "config": {
            "action_type": "kick_player",
            "player_id": "${trigger_event.steam_id}",
            "reason": "No squad",
        },
        **extra,
    }


async def _logs(repo, execution):
    return await repo.list_execution_logs(execution.id)


def test_resolve_policy_merges_step_and_workflow_settings():
    definition = parse_definition(
        {
            "steps": [kick_step(on_error={"action": "retry", "max_retries": 2})],
            "error_handling": {"retry_delay_ms": 5, "retry_fallback": "continue"},
        }
    )
    policy = resolve_policy(definition.steps[0], definition.error_handling)
    assert (policy.action, policy.max_retries, policy.retry_delay_ms, policy.fallback) == (
        "retry",
        2,
        5,
        "continue",
    )
    default = resolve_policy(definition.steps[0].model_copy(update={"on_error": None}), ErrorHandling())
    assert default.action == "stop"


@pytest.mark.asyncio
async def test_steps_run_in_declaration_order(make_workflow, run_workflow, repo):
    wf = await make_workflow([log_step("a"), log_step("b"), log_step("c")])
    execution = await run_workflow(wf)
    assert execution.status == "completed"
    assert execution.completed_steps == 3
    logs = await _logs(repo, execution)
    assert [(log.step_id, log.step_order, log.step_status) for log in logs] == [
        ("a", 1, "completed"),
        ("b", 2, "completed"),
        ("c", 3, "completed"),
    ]


@pytest.mark.asyncio
async def test_templates_and_output_variable(make_workflow, run_workflow, repo, rcon):
    wf = await make_workflow(
        [
            {
                **kick_step(),
                "config": {**kick_step()["config"], "output_variable": "kick_result"},
            },
            log_step("notify", "Kicked ${trigger_event.name} (${kick_result.response})"),
        ]
    )
    execution = await run_workflow(wf, payload={"steam_id": "765", "name": "Bob"})
    assert execution.status == "completed"
    assert rcon.commands == ['AdminKick "765" No squad']
    messages = await repo.list_log_messages(execution.id)
    assert [m.message for m in messages] == ["Kicked Bob (ok)"]
    logs = await _logs(repo, execution)
    assert logs[0].step_input["player_id"] == "765"
    assert logs[-1].variables["kick_result"]["command"] == 'AdminKick "765" No squad'


@pytest.mark.asyncio
async def test_explicit_next_step_overrides_order(make_workflow, run_workflow, repo):
    wf = await make_workflow(
        [log_step("a", next_steps=["c"]), log_step("b"), log_step("c")]
    )
    execution = await run_workflow(wf)
    assert [log.step_id for log in await _logs(repo, execution)] == ["a", "c"]


@pytest.mark.asyncio
async def test_disabled_steps_are_skipped(make_workflow, run_workflow, repo):
    wf = await make_workflow([log_step("a", enabled=False), log_step("b")])
    execution = await run_workflow(wf)
    assert execution.skipped_steps == 1
    assert [log.step_id for log in await _logs(repo, execution)] == ["b"]


@pytest.mark.asyncio
async def test_failure_stops_execution_by_default(make_workflow, run_workflow, repo, rcon):
    rcon.fail = 1
    wf = await make_workflow([kick_step(), log_step("after")])
    execution = await run_workflow(wf, payload={"steam_id": "765"})
    assert execution.status == "failed"
    assert "RCON command failed" in execution.error
    assert execution.failed_steps == 1
    logs = await _logs(repo, execution)
    assert [(log.step_id, log.step_status) for log in logs] == [("kick", "failed")]
    assert logs[0].metadata["error_kind"] == "transport"


@pytest.mark.asyncio
async def test_retry_until_success(make_workflow, run_workflow, repo, rcon):
    rcon.fail = 2
    wf = await make_workflow(
        [kick_step(on_error={"action": "retry", "max_retries": 2, "retry_delay_ms": 0})]
    )
    execution = await run_workflow(wf, payload={"steam_id": "765"})
    assert execution.status == "completed"
    assert len(rcon.commands) == 3
    logs = await _logs(repo, execution)
    assert [(log.step_order, log.attempt, log.step_status) for log in logs] == [
        (1, 1, "failed"),
        (1, 2, "failed"),
        (1, 3, "completed"),
    ]


@pytest.mark.asyncio
async def test_exhausted_retries_use_fallback(make_workflow, run_workflow, repo, rcon):
    rcon.fail = 5
    wf = await make_workflow(
        [
            kick_step(
                on_error={
                    "action": "retry",
                    "max_retries": 1,
                    "retry_delay_ms": 0,
                    "fallback": "continue",
                }
            ),
            log_step("after"),
        ]
    )
    execution = await run_workflow(wf, payload={"steam_id": "765"})
    assert execution.status == "completed"
    assert (execution.completed_steps, execution.failed_steps) == (1, 1)
    logs = await _logs(repo, execution)
    assert [(log.step_id, log.attempt) for log in logs] == [
        ("kick", 1),
        ("kick", 2),
        ("after", 1),
    ]


@pytest.mark.asyncio
async def test_configuration_failures_are_not_retried(
    make_workflow, run_workflow, orchestrator_factory, repo
):
    orchestrator = orchestrator_factory()
    orchestrator.executor.rcon = None
    wf = await make_workflow(
        [kick_step(on_error={"action": "retry", "max_retries": 3, "retry_delay_ms": 0})]
    )
    execution = await run_workflow(wf, payload={"steam_id": "765"}, orchestrator=orchestrator)
    assert execution.status == "failed"
    logs = await _logs(repo, execution)
    assert len(logs) == 1
    assert logs[0].metadata["error_kind"] == "configuration"
    assert logs[0].metadata["retryable"] is False


@pytest.mark.asyncio
async def test_unknown_action_kind_fails_the_step(make_workflow, run_workflow, repo):
    wf = await make_workflow(
        [{"id": "tp", "type": "action", "config": {"action_type": "teleport_player"}}]
    )
    execution = await run_workflow(wf)
    assert execution.status == "failed"
    assert "Unknown action type" in execution.error


@pytest.mark.asyncio
async def test_continue_policy(make_workflow, run_workflow, repo, rcon):
    rcon.fail = 1
    wf = await make_workflow([kick_step(on_error={"action": "continue"}), log_step("after")])
    execution = await run_workflow(wf, payload={"steam_id": "765"})
    assert execution.status == "completed"
    assert [log.step_id for log in await _logs(repo, execution)] == ["kick", "after"]


@pytest.mark.asyncio
async def test_goto_policy(make_workflow, run_workflow, repo, rcon):
    rcon.fail = 1
    wf = await make_workflow(
        [
            kick_step(on_error={"action": "goto", "goto_step": "notify"}),
            log_step("skipped"),
            log_step("notify"),
        ]
    )
    execution = await run_workflow(wf, payload={"steam_id": "765"})
    assert execution.status == "completed"
    assert [log.step_id for log in await _logs(repo, execution)] == ["kick", "notify"]


@pytest.mark.asyncio
async def test_goto_loop_hits_visit_limit(make_workflow, run_workflow, orchestrator_factory, rcon):
    rcon.fail = 100
    wf = await make_workflow([kick_step(on_error={"action": "goto", "goto_step": "kick"})])
    orchestrator = orchestrator_factory(max_steps_per_execution=5)
    execution = await run_workflow(wf, payload={"steam_id": "765"}, orchestrator=orchestrator)
    assert execution.status == "error"
    assert "5 step visits" in execution.error
    assert len(rcon.commands) == 5


def _branching(on_true="kick", on_false="warn"):
    return [
        {
            "id": "check",
            "type": "condition",
            "config": {
                "conditions": [
                    {"field": "trigger_event.team", "operator": "equals", "value": "1"}
                ],
                "on_true": on_true,
                "on_false": on_false,
            },
        },
        log_step("kick", next_steps=["done"]),
        log_step("warn", next_steps=["done"]),
        log_step("done"),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("team, expected", [(1, "kick"), (2, "warn")])
async def test_condition_branches(make_workflow, run_workflow, repo, team, expected):
    wf = await make_workflow(_branching())
    execution = await run_workflow(wf, payload={"team": team})
    logs = await _logs(repo, execution)
    assert [log.step_id for log in logs] == ["check", expected, "done"]
    assert logs[0].metadata == {"branch": expected}
    assert logs[0].step_output["result"] is (team == 1)


@pytest.mark.asyncio
async def test_condition_without_branches_ends_when_false(make_workflow, run_workflow, repo):
    steps = [
        {
            "id": "check",
            "type": "condition",
            "config": {
                "conditions": [{"field": "trigger_event.team", "operator": "equals", "value": 1}]
            },
        },
        log_step("after"),
    ]
    wf = await make_workflow(steps)
    passed = await run_workflow(wf, payload={"team": 1})
    ended = await run_workflow(wf, payload={"team": 2})
    assert [log.step_id for log in await _logs(repo, passed)] == ["check", "after"]
    assert [log.step_id for log in await _logs(repo, ended)] == ["check"]
    assert ended.status == "completed"


@pytest.mark.asyncio
async def test_condition_with_missing_selected_branch_completes(make_workflow, run_workflow, repo):
    steps = _branching(on_false=None)
    wf = await make_workflow(steps)
    execution = await run_workflow(wf, payload={"team": 2})
    assert execution.status == "completed"
    assert [log.step_id for log in await _logs(repo, execution)] == ["check"]


@pytest.mark.asyncio
async def test_failed_condition_under_continue_takes_no_branch(
    make_workflow, run_workflow, repo, rcon
):
    steps = [
        {
            "id": "check",
            "type": "condition",
            "config": {
                "conditions": [{"field": "trigger_event.team", "operator": "bogus", "value": 1}]
            },
            "next_steps": ["ban", "done"],
            "on_error": {"action": "continue"},
        },
        {
            "id": "ban",
            "type": "action",
            "config": {"action_type": "ban_player", "player_id": "1", "duration": 0, "reason": "x"},
        },
        log_step("done"),
    ]
    wf = await make_workflow(steps)
    execution = await run_workflow(wf, payload={"team": 1})
    logs = await _logs(repo, execution)
    assert execution.status == "completed"
    assert [(log.step_id, log.step_status) for log in logs] == [("check", "failed")]
    assert rcon.commands == []


@pytest.mark.asyncio
async def test_variable_operations(make_workflow, run_workflow, repo):
    steps = [
        {"id": "set", "type": "variable", "config": {"operation": "set", "variable_name": "count", "source_field": "trigger_event.count"}},
        {"id": "inc", "type": "variable", "config": {"operation": "increment", "variable_name": "count", "increment": 2}},
        {"id": "msg", "type": "variable", "config": {"operation": "set", "variable_name": "msg", "expression": "Count is ${count}"}},
        {"id": "num", "type": "variable", "config": {"operation": "set", "variable_name": "limit", "expression": "${count}0"}},
        {"id": "add", "type": "variable", "config": {"operation": "append", "variable_name": "names", "value": "${trigger_event.name}"}},
        {"id": "copy", "type": "variable", "config": {"operation": "copy", "source_variable": "names", "target_variable": "copied"}},
        {"id": "upper", "type": "variable", "config": {"operation": "transform", "variable_name": "msg", "transformation": "uppercase", "target_variable": "shout"}},
        {"id": "drop", "type": "variable", "config": {"operation": "delete", "variable_name": "temp"}},
        {"id": "save", "type": "variable", "config": {"operation": "kv_set", "key": "last_${trigger_event.name}", "variable_name": "count"}},
        {"id": "load", "type": "variable", "config": {"operation": "kv_get", "key": "last_Bob", "variable_name": "restored"}},
    ]
    wf = await make_workflow(steps, variables={"names": [], "temp": 1})
    execution = await run_workflow(wf, payload={"count": 3, "name": "Bob"})
    assert execution.status == "completed", execution.error
    logs = await _logs(repo, execution)
    assert logs[-1].variables == {
        "names": ["Bob"],
        "count": 5,
        "msg": "Count is 5",
        "limit": 50,
        "copied": ["Bob"],
        "shout": "COUNT IS 5",
        "restored": 5,
    }
    entry = await repo.kv_get(wf.id, "last_Bob")
    assert entry.value == 5


@pytest.mark.asyncio
async def test_increment_non_numeric_variable_fails(make_workflow, run_workflow):
    wf = await make_workflow(
        [{"id": "inc", "type": "variable", "config": {"operation": "increment", "variable_name": "n"}}],
        variables={"n": "abc"},
    )
    execution = await run_workflow(wf)
    assert execution.status == "failed"
    assert "not numeric" in execution.error


@pytest.mark.asyncio
async def test_step_timeout(make_workflow, run_workflow, repo):
    wf = await make_workflow(
        [{"id": "wait", "type": "delay", "timeout_ms": 50, "config": {"delay_ms": 2000}}]
    )
    execution = await run_workflow(wf)
    assert execution.status == "failed"
    logs = await _logs(repo, execution)
    assert logs[0].metadata["error_kind"] == "timeout"


@pytest.mark.asyncio
async def test_delay_step(make_workflow, run_workflow, repo):
    wf = await make_workflow([{"id": "wait", "type": "delay", "config": {"delay_ms": 10}}])
    execution = await run_workflow(wf)
    assert execution.status == "completed"
    logs = await _logs(repo, execution)
    assert logs[0].step_output == {"delay_ms": 10}
    assert logs[0].step_duration_ms is not None


@pytest.mark.asyncio
async def test_running_transitions_are_recorded_when_enabled(
    make_workflow, run_workflow, orchestrator_factory, repo
):
    wf = await make_workflow([log_step("a")])
    orchestrator = orchestrator_factory(record_running_transitions=True)
    execution = await run_workflow(wf, orchestrator=orchestrator)
    logs = await _logs(repo, execution)
    assert [(log.step_order, log.step_status) for log in logs] == [
        (1, "running"),
        (1, "completed"),
    ]

