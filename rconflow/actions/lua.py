"""Sandboxed Lua script action backed by lupa."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, ClassVar, Coroutine, Dict, Optional

import lupa

from ..conditions import get_field_value, to_text
from ..constants import DEFAULT_BAN_REASON, DEFAULT_KICK_REASON
from ..contracts import LuaScriptConfig
from .base import ActionContext, ActionResult
from .rcon import (
    ban_command,
    broadcast_command,
    chat_message_command,
    kick_command,
    warn_command,
)

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "script timeout exceeded"

# instructions between two deadline checks
HOOK_INTERVAL = 1000

# Hooks are per Lua thread, so every coroutine gets the deadline hook as well.
# resume, pcall and xpcall re-check the deadline when they return.
_INSTALL_HOOK = """
function(expired, message)
    local sethook = debug.sethook
    local create, resume, pcall_, xpcall_ = coroutine.create, coroutine.resume, pcall, xpcall
    local function check()
        if expired() then error(message, 0) end
    end
    local function checked(...)
        check()
        return ...
    end
    local function unwrap(ok, ...)
        if not ok then error((...), 0) end
        return ...
    end
    sethook(check, "", %(interval)d)
    coroutine.create = function(f)
        local co = create(f)
        sethook(co, check, "", %(interval)d)
        return co
    end
    coroutine.resume = function(...)
        return checked(resume(...))
    end
    coroutine.wrap = function(f)
        local co = coroutine.create(f)
        return function(...)
            return unwrap(coroutine.resume(co, ...))
        end
    end
    pcall = function(...)
        return checked(pcall_(...))
    end
    xpcall = function(...)
        return checked(xpcall_(...))
    end
end
""" % {"interval": HOOK_INTERVAL}

_SANDBOX = """
local os_time, os_clock, os_date = os.time, os.clock, os.date
os = {time = os_time, clock = os_clock, date = os_date}
io = nil
debug = nil
load = nil
loadfile = nil
loadstring = nil
dofile = nil
require = nil
package = nil
collectgarbage = nil
string.dump = nil
python = nil
"""


def _deny_attributes(obj: Any, attr_name: str, is_setting: bool) -> str:
    raise AttributeError(f"access to {attr_name!r} is not allowed")


def from_lua(value: Any) -> Any:
    """Convert Lua tables into Python dicts and lists, recursively."""
    lua_type = lupa.lua_type(value)
    if lua_type == "table":
        items = list(value.items())
        keys = [k for k, _ in items]
        if keys and all(type(k) is int for k in keys) and sorted(keys) == list(
            range(1, len(keys) + 1)
        ):
            return [from_lua(value[i]) for i in range(1, len(keys) + 1)]
        return {str(k): from_lua(v) for k, v in items}
    if lua_type is not None:
        return str(value)
    return value


class LuaScriptAction:
    """Run a Lua script in a fresh runtime on a worker thread.

    The runtime is bounded by an instruction-count deadline hook and a heap
    limit, and only exposes the host functions registered below.
    """

    config_model: ClassVar = LuaScriptConfig

    async def execute(self, config: LuaScriptConfig, context: ActionContext) -> ActionResult:
        if not config.script.strip():
            return ActionResult.failure("configuration", "script must not be empty")
        timeout = config.timeout_seconds or context.engine.lua.timeout_s
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._run, config, context, loop, timeout),
                timeout + 5,
            )
        except asyncio.TimeoutError:
            return ActionResult.failure(
                "timeout", f"Lua script exceeded {timeout}s", detail={"timeout_s": timeout}
            )

    # ------------------------------------------------------------------
    def _run(
        self,
        config: LuaScriptConfig,
        context: ActionContext,
        loop: asyncio.AbstractEventLoop,
        timeout: float,
    ) -> ActionResult:
        deadline = time.monotonic() + timeout
        runtime = lupa.LuaRuntime(
            unpack_returned_tuples=True,
            register_eval=False,
            register_builtins=False,
            attribute_filter=_deny_attributes,
            max_memory=context.engine.lua.max_memory_mb * 1024 * 1024,
        )
        runtime.eval(_INSTALL_HOOK)(lambda: time.monotonic() > deadline, TIMEOUT_MESSAGE)
        runtime.execute(_SANDBOX)

        def wait(coro: Coroutine[Any, Any, Any]) -> Any:
            remaining = max(deadline - time.monotonic(), 0.1)
            return asyncio.run_coroutine_threadsafe(coro, loop).result(remaining)

        self._register_host_functions(runtime, config, context, wait)

        try:
            returned = runtime.execute(config.script)
        except lupa.LuaSyntaxError as e:
            return ActionResult.failure(
                "script", f"Lua syntax error: {e}", retryable=False
            )
        except lupa.LuaMemoryError as e:
            return ActionResult.failure(
                "script", f"Lua script exceeded memory limit: {e}", retryable=False
            )
        except lupa.LuaError as e:
            if TIMEOUT_MESSAGE in str(e):
                return ActionResult.failure(
                    "timeout", f"Lua script exceeded {timeout}s", detail={"timeout_s": timeout}
                )
            return ActionResult.failure("script", f"Lua error: {e}")
        except Exception as e:
            logger.warning(f"Lua host function failed in execution {context.execution_id}: {e}")
            return ActionResult.failure("script", f"Lua host function failed: {e}")

        output = from_lua(runtime.globals().result)
        if not isinstance(output, dict):
            output = {"result": output}
        if returned is not None:
            output["return_value"] = from_lua(
                returned[0] if isinstance(returned, tuple) else returned
            )
        return ActionResult.success(output)

    def _register_host_functions(
        self,
        runtime: Any,
        config: LuaScriptConfig,
        context: ActionContext,
        wait: Callable[[Coroutine[Any, Any, Any]], Any],
    ) -> None:
        g = runtime.globals()

        def to_lua(value: Any) -> Any:
            if isinstance(value, (dict, list, tuple)):
                return runtime.table_from(value, recursive=True)
            return value

        def logger_for(level: str) -> Callable[[Any], None]:
            def _log(message: Any) -> None:
                wait(context.log(to_text(from_lua(message)), level=level))

            return _log

        def rcon(command: str) -> tuple[Optional[str], Optional[str]]:
            if context.rcon is None:
                return None, "no RCON executor available"
            try:
                return wait(context.rcon.execute(context.server_id, command)), None
            except Exception as e:
                return None, str(e)

        def json_decode(text: str) -> tuple[Any, Optional[str]]:
            try:
                return to_lua(json.loads(text)), None
            except (TypeError, ValueError) as e:
                return None, str(e)

        def safe_get(table: Any, path: str, default: Any = None) -> Any:
            value = get_field_value(from_lua(table), path)
            return to_lua(value if value is not None else from_lua(default))

        g.log = logger_for("INFO")
        g.log_debug = logger_for("DEBUG")
        g.log_warn = logger_for("WARN")
        g.log_error = logger_for("ERROR")

        g.set_variable = lambda name, value: context.variables.set(name, from_lua(value))
        g.get_variable = lambda name: to_lua(context.variables.get(name))

        g.kv_get = lambda key, default=None: to_lua(
            wait(context.kv.get(key, from_lua(default)))
        )
        g.kv_set = lambda key, value: wait(context.kv.set(key, from_lua(value)))
        g.kv_delete = lambda key: wait(context.kv.delete(key))

        g.json_encode = lambda value: json.dumps(from_lua(value), default=str)
        g.json_decode = json_decode
        g.safe_get = safe_get
        g.to_string = lambda value: to_text(from_lua(value))

        g.rcon_execute = rcon
        g.rcon_broadcast = lambda message: rcon(broadcast_command(message))
        g.rcon_chat_message = lambda player, message: rcon(
            chat_message_command(player, message)
        )
        g.rcon_kick = lambda player, reason=None: rcon(
            kick_command(player, reason or DEFAULT_KICK_REASON)
        )
        g.rcon_warn = lambda player, message: rcon(warn_command(player, message))
        g.rcon_ban = lambda player, days=0, reason=None: rcon(
            ban_command(player, float(days or 0), reason or DEFAULT_BAN_REASON)
        )

        workflow: Dict[str, Any] = {
            "execution_id": context.execution_id,
            "workflow_id": context.workflow_id,
            "server_id": context.server_id,
            "step_id": context.step_id,
            "variables": context.variables.snapshot(),
            "trigger_event": context.trigger_event,
            "metadata": context.metadata,
            "step_results": context.step_results,
            "config": config.model_extra or {},
        }
        g.workflow = to_lua(json.loads(json.dumps(workflow, default=str)))
        g.result = runtime.table()
