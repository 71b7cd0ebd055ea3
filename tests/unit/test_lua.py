"""Tests for the sandboxed Lua script action."""

import time

import pytest

from rconflow.actions import ActionDispatcher


async def _run(context, script, **config):
    return await ActionDispatcher().execute(
        "lua_script", {"script": script, **config}, context
    )


@pytest.mark.asyncio
async def test_script_fills_result_table_and_variables(action_context):
    ctx = action_context(trigger_event={"player": {"name": "Bob"}})
    result = await _run(
        ctx,
        """
        result.greeting = "hello " .. workflow.trigger_event.player.name
        result.items = {1, 2, 3}
        set_variable("seen", true)
        """,
    )
    assert result.ok, result.error
    assert result.output == {"greeting": "hello Bob", "items": [1, 2, 3]}
    assert ctx.variables.get("seen") is True


@pytest.mark.asyncio
async def test_return_value_is_captured(action_context):
    result = await _run(action_context(), "return 40 + 2")
    assert result.ok
    assert result.output["return_value"] == 42


@pytest.mark.asyncio
async def test_extra_config_is_visible_as_workflow_config(action_context):
    result = await _run(
        action_context(), "result.limit = workflow.config.limit", limit=3
    )
    assert result.output == {"limit": 3}


@pytest.mark.asyncio
async def test_host_functions_reach_rcon_kv_and_logs(action_context, rcon, repo):
    ctx = action_context()
    result = await _run(
        ctx,
        """
        local response, err = rcon_kick("765", "bye")
        result.response = response
        kv_set("strikes", 2)
        result.strikes = kv_get("strikes")
        result.missing = kv_get("nope", "fallback")
        log_warn("kicked 765")
        """,
    )
    assert result.ok, result.error
    assert rcon.commands == ['AdminKick "765" bye']
    assert result.output == {"response": "ok", "strikes": 2, "missing": "fallback"}
    messages = await repo.list_log_messages("exec-1")
    assert [(m.log_level, m.message) for m in messages] == [("WARN", "kicked 765")]


@pytest.mark.asyncio
async def test_json_helpers(action_context):
    result = await _run(
        action_context(),
        """
        local value, err = json_decode('{"a": {"b": 5}}')
        result.b = safe_get(value, "a.b")
        result.fallback = safe_get(value, "a.c", "none")
        local bad, bad_err = json_decode("{")
        result.failed = bad == nil and bad_err ~= nil
        result.encoded = json_encode({x = 1})
        """,
    )
    assert result.ok, result.error
    assert result.output == {
        "b": 5,
        "fallback": "none",
        "failed": True,
        "encoded": '{"x": 1}',
    }


@pytest.mark.asyncio
async def test_sandbox_removes_dangerous_globals(action_context):
    result = await _run(
        action_context(),
        """
        result.io = io == nil
        result.execute = os.execute == nil
        result.require = require == nil
        result.load = load == nil
        result.python = python == nil
        result.time = type(os.time()) == "number"
        """,
    )
    assert result.ok, result.error
    assert all(result.output.values()), result.output


@pytest.mark.asyncio
async def test_syntax_error_is_not_retryable(action_context):
    result = await _run(action_context(), "this is not lua")
    assert result.error.kind == "script"
    assert result.error.retryable is False


@pytest.mark.asyncio
async def test_runtime_error(action_context):
    result = await _run(action_context(), 'error("boom")')
    assert result.error.kind == "script"
    assert "boom" in result.error.message


@pytest.mark.asyncio
async def test_runaway_script_times_out(action_context):
    result = await _run(action_context(), "while true do end", timeout_seconds=0.3)
    assert result.error.kind == "timeout"


@pytest.mark.asyncio
async def test_busy_loop_inside_coroutine_times_out(action_context):
    script = """
    local n = 0
    coroutine.wrap(function() while true do n = n + 1 end end)()
    """
    started = time.monotonic()
    result = await _run(action_context(), script, timeout_seconds=0.3)
    assert result.error.kind == "timeout"
    assert time.monotonic() - started < 3


@pytest.mark.asyncio
async def test_timeout_caught_by_resume_still_ends_script(action_context):
    script = """
    local co = coroutine.create(function() while true do end end)
    local ok = coroutine.resume(co)
    result.after_resume = ok
    """
    started = time.monotonic()
    result = await _run(action_context(), script, timeout_seconds=0.3)
    assert result.error.kind == "timeout"
    assert time.monotonic() - started < 3


@pytest.mark.asyncio
async def test_coroutines_still_work_within_the_deadline(action_context):
    script = """
    local gen = coroutine.wrap(function()
        for i = 1, 3 do coroutine.yield(i) end
    end)
    result.values = {gen(), gen(), gen()}
    """
    result = await _run(action_context(), script)
    assert result.ok, result.error
    assert result.output == {"values": [1, 2, 3]}
