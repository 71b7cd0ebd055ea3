"""Step executor: walks a workflow definition for one execution."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import httpx

from .actions import ActionContext, ActionDispatcher
from .actions.base import BanService, RconExecutor
from .conditions import (
    evaluate_conditions,
    get_field_value,
    render_template,
    resolve_templates,
    to_number,
    to_text,
)
from .config import EngineConfig
from .contracts import (
    ActionStep,
    ConditionStep,
    DelayStep,
    ErrorHandling,
    Step,
    VariableStep,
    VariableStepConfig,
    WorkflowDefinition,
)
from .exceptions import (
    ActionConfigError,
    ConditionError,
    ExecutionAborted,
    StepFailed,
    StepTimeout,
)
from .persistence.models import Execution, ExecutionLog, Workflow
from .recorder import ExecutionRecorder
from .variables import KVStore, VariableStore

logger = logging.getLogger(__name__)

# config keys passed to actions without template substitution
UNTEMPLATED_KEYS = frozenset({"script"})


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


@dataclass
class FailurePolicy:
    action: str
    max_retries: int
    retry_delay_ms: int
    fallback: str
    goto_step: Optional[str] = None


def resolve_policy(step: Step, defaults: ErrorHandling) -> FailurePolicy:
    """Merge a step's ``on_error`` with the workflow-wide error handling."""
    on_error = step.on_error
    if on_error is None:
        return FailurePolicy(
            action=defaults.default_action,
            max_retries=defaults.max_retries,
            retry_delay_ms=defaults.retry_delay_ms,
            fallback=defaults.retry_fallback,
        )
    return FailurePolicy(
        action=on_error.action,
        max_retries=(
            on_error.max_retries
            if on_error.max_retries is not None
            else defaults.max_retries
        ),
        retry_delay_ms=(
            on_error.retry_delay_ms
            if on_error.retry_delay_ms is not None
            else defaults.retry_delay_ms
        ),
        fallback=on_error.fallback or defaults.retry_fallback,
        goto_step=on_error.goto_step,
    )


@dataclass
class ExecutionState:
    """Mutable state of one running execution."""

    execution: Execution
    workflow: Workflow
    definition: WorkflowDefinition
    variables: VariableStore
    kv: KVStore
    trigger_event: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    step_results: Dict[str, Any] = field(default_factory=dict)
    step_order: int = 0
    visits: int = 0


class StepExecutor:
    """Execute the steps of a workflow definition in order.

    ``run`` returns when the execution completes, raises ``StepFailed`` when
    a step failure stops it and ``ExecutionAborted`` on engine limits.
    """

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        recorder: ExecutionRecorder,
        engine: Optional[EngineConfig] = None,
        rcon: Optional[RconExecutor] = None,
        ban_service: Optional[BanService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.engine = engine or EngineConfig()
        self.rcon = rcon
        self.ban_service = ban_service
        self.http_client = http_client

    # ------------------------------------------------------------------
    # Control flow
    async def run(self, state: ExecutionState) -> None:
        definition = state.definition
        current = definition.steps[0].id if definition.steps else None
        while current is not None:
            step = definition.get_step(current)
            if step is None:
                raise ExecutionAborted(f"Step {current!r} does not exist")
            if not step.enabled:
                state.execution.skipped_steps += 1
                logger.debug(f"Skipping disabled step {step.id} in execution {state.execution.id}")
                current = self._declared_next(definition, step)
                continue

            state.visits += 1
            if state.visits > self.engine.max_steps_per_execution:
                raise ExecutionAborted(
                    f"Execution exceeded {self.engine.max_steps_per_execution} step visits"
                )
            state.step_order += 1
            current = await self._visit(step, state)

    def _declared_next(self, definition: WorkflowDefinition, step: Step) -> Optional[str]:
        index = definition.step_index(step.id)
        if index + 1 < len(definition.steps):
            return definition.steps[index + 1].id
        return None

    def _successor(self, definition: WorkflowDefinition, step: Step) -> Optional[str]:
        if step.next_steps:
            return step.next_steps[0]
        return self._declared_next(definition, step)

    async def _visit(self, step: Step, state: ExecutionState) -> Optional[str]:
        policy = resolve_policy(step, state.definition.error_handling)
        attempt = 0
        while True:
            attempt += 1
            try:
                next_step = await self._attempt(step, state, attempt, policy)
            except StepFailed as e:
                if policy.action == "retry" and e.retryable and attempt <= policy.max_retries:
                    logger.info(
                        f"Retrying step {step.id} of execution {state.execution.id} "
                        f"(attempt {attempt + 1} of {policy.max_retries + 1})"
                    )
                    await asyncio.sleep(policy.retry_delay_ms / 1000)
                    continue

                state.execution.failed_steps += 1
                action = policy.fallback if policy.action == "retry" else policy.action
                if action == "continue":
                    if step.type == "condition":
                        # a failed condition never selects a branch
                        logger.info(f"Condition step {step.id} failed, ending execution: {e}")
                        return None
                    logger.info(f"Continuing after failed step {step.id}: {e}")
                    return self._successor(state.definition, step)
                if action == "goto":
                    logger.info(f"Step {step.id} failed, jumping to {policy.goto_step}")
                    return policy.goto_step
                raise
            state.execution.completed_steps += 1
            return next_step

    # ------------------------------------------------------------------
    # Attempts
    async def _attempt(
        self, step: Step, state: ExecutionState, attempt: int, policy: FailurePolicy
    ) -> Optional[str]:
        context = self._context(step, state)
        step_input = self._step_input(step, context)
        if self.engine.record_running_transitions:
            await self.recorder.record_step(
                self._log_row(step, state, attempt, "running", step_input)
            )

        started = time.monotonic()
        output: Any = None
        next_step: Optional[str] = None
        failure: Optional[StepFailed] = None
        status = "completed"
        metadata: Dict[str, Any] = {}
        try:
            output, next_step = await self._run_with_timeout(step, step_input, state, context)
        except StepFailed as e:
            failure, status = e, "failed"
        except asyncio.CancelledError:
            await self.recorder.record_step(
                self._log_row(
                    step,
                    state,
                    attempt,
                    "error",
                    step_input,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error="execution cancelled",
                )
            )
            raise
        except Exception as e:
            logger.exception(f"Step {step.id} of execution {state.execution.id} raised")
            failure, status = StepFailed(str(e), kind="error"), "error"

        if failure is not None:
            metadata = {
                "error_kind": failure.kind,
                "retryable": failure.retryable,
                "on_error": policy.action,
            }
            if failure.detail:
                metadata["detail"] = _json_safe(failure.detail)
        elif step.type == "condition":
            metadata = {"branch": next_step}

        await self.recorder.record_step(
            self._log_row(
                step,
                state,
                attempt,
                status,
                step_input,
                output=output,
                duration_ms=int((time.monotonic() - started) * 1000),
                metadata=metadata,
                error=str(failure) if failure else None,
            )
        )
        if failure is not None:
            raise failure
        return next_step

    async def _run_with_timeout(
        self,
        step: Step,
        step_input: Dict[str, Any],
        state: ExecutionState,
        context: ActionContext,
    ) -> Tuple[Any, Optional[str]]:
        if step.timeout_ms:
            timeout: Optional[float] = step.timeout_ms / 1000
        elif step.type == "delay":
            timeout = None
        else:
            timeout = self.engine.default_step_timeout_s
        try:
            return await asyncio.wait_for(
                self._run_step(step, step_input, state, context), timeout
            )
        except asyncio.TimeoutError:
            raise StepTimeout(f"Step {step.id} timed out after {timeout}s")

    async def _run_step(
        self,
        step: Step,
        step_input: Dict[str, Any],
        state: ExecutionState,
        context: ActionContext,
    ) -> Tuple[Any, Optional[str]]:
        if isinstance(step, ActionStep):
            output = await self._run_action(step, step_input, context)
            return output, self._successor(state.definition, step)
        if isinstance(step, ConditionStep):
            return self._run_condition(step, state, context)
        if isinstance(step, VariableStep):
            output = await self._run_variable(step.config, context)
            return output, self._successor(state.definition, step)
        if isinstance(step, DelayStep):
            await asyncio.sleep(step.config.delay_ms / 1000)
            return {"delay_ms": step.config.delay_ms}, self._successor(state.definition, step)
        raise ActionConfigError(f"Unsupported step type {step.type!r}")

    # ------------------------------------------------------------------
    # Step kinds
    async def _run_action(
        self, step: ActionStep, step_input: Dict[str, Any], context: ActionContext
    ) -> Any:
        action_type = step.config.action_type
        result = await self.dispatcher.execute(action_type, step_input, context)
        if not result.ok:
            error = result.error
            assert error is not None
            if error.kind == "configuration":
                raise ActionConfigError(error.message, detail=error.detail)
            raise StepFailed(
                error.message, retryable=error.retryable, kind=error.kind, detail=error.detail
            )
        context.step_results[step.id] = result.output
        if step.config.output_variable:
            context.variables.set(step.config.output_variable, result.output)
        return result.output

    def _run_condition(
        self, step: ConditionStep, state: ExecutionState, context: ActionContext
    ) -> Tuple[Any, Optional[str]]:
        config = step.config
        try:
            result = evaluate_conditions(
                config.conditions, context.template_data(), config.logic
            )
        except ConditionError as e:
            raise ActionConfigError(str(e)) from e

        on_true = config.on_true or (step.next_steps[0] if step.next_steps else None)
        on_false = config.on_false or (
            step.next_steps[1] if len(step.next_steps) > 1 else None
        )
        if on_true is None and on_false is None:
            target = self._declared_next(state.definition, step) if result else None
        else:
            target = on_true if result else on_false
        context.step_results[step.id] = {"result": result}
        return {"result": result, "next_step": target}, target

    async def _run_variable(self, config: VariableStepConfig, context: ActionContext) -> Any:
        variables = context.variables
        data = context.template_data()
        op = config.operation
        name = config.variable_name
        value: Any = None

        if op == "set":
            if config.source_field:
                value = get_field_value(data, config.source_field)
            elif config.expression:
                value = _coerce(render_template(config.expression, data))
            else:
                value = resolve_templates(config.value, data)
            variables.set(name, value)
        elif op in ("increment", "decrement"):
            current = variables.get(name)
            number = to_number(current) if current is not None else 0.0
            if number is None:
                raise ActionConfigError(f"Variable {name!r} is not numeric")
            delta = config.increment if op == "increment" else -config.decrement
            value = _normalize_number(number + delta)
            variables.set(name, value)
        elif op in ("append", "prepend"):
            addition = resolve_templates(config.value, data)
            value = _concat(variables.get(name), addition, prepend=op == "prepend", name=name)
            variables.set(name, value)
        elif op == "delete":
            variables.delete(name)
        elif op == "copy":
            value = copy.deepcopy(variables.get(config.source_variable))
            variables.set(config.target_variable, value)
            name = config.target_variable
        elif op == "transform":
            value = _transform(variables.get(name), config.transformation)
            name = config.target_variable or name
            variables.set(name, value)
        elif op == "kv_get":
            key = to_text(render_template(config.key, data))
            value = await context.kv.get(key, resolve_templates(config.value, data))
            variables.set(name, value)
        elif op == "kv_set":
            key = to_text(render_template(config.key, data))
            value = variables.get(name) if name else resolve_templates(config.value, data)
            await context.kv.set(key, value)
        elif op == "kv_delete":
            key = to_text(render_template(config.key, data))
            value = await context.kv.delete(key)

        return {"operation": op, "variable_name": name, "value": value}

    # ------------------------------------------------------------------
    # Helpers
    def _context(self, step: Step, state: ExecutionState) -> ActionContext:
        return ActionContext(
            execution_id=state.execution.id,
            workflow_id=state.workflow.id,
            server_id=state.execution.server_id,
            variables=state.variables,
            kv=state.kv,
            recorder=self.recorder,
            step_id=step.id,
            step_name=step.name,
            trigger_event=state.trigger_event,
            metadata=state.metadata,
            step_results=state.step_results,
            rcon=self.rcon,
            ban_service=self.ban_service,
            http_client=self.http_client,
            engine=self.engine,
        )

    def _step_input(self, step: Step, context: ActionContext) -> Dict[str, Any]:
        raw = step.config.model_dump(mode="json", exclude_none=True)
        if not isinstance(step, ActionStep):
            return raw
        data = context.template_data()
        return {
            key: value if key in UNTEMPLATED_KEYS else resolve_templates(value, data)
            for key, value in raw.items()
        }

    def _log_row(
        self,
        step: Step,
        state: ExecutionState,
        attempt: int,
        status: str,
        step_input: Dict[str, Any],
        output: Any = None,
        duration_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> ExecutionLog:
        return ExecutionLog(
            execution_id=state.execution.id,
            workflow_id=state.workflow.id,
            step_id=step.id,
            step_order=state.step_order,
            attempt=attempt,
            step_name=step.name,
            step_type=step.type,
            step_status=status,
            step_input=_json_safe(step_input),
            step_output=_json_safe(output),
            step_duration_ms=duration_ms,
            variables=_json_safe(state.variables.snapshot()),
            metadata=metadata or {},
            error=error,
        )


def _coerce(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    lowered = value.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def _normalize_number(value: float) -> Any:
    return int(value) if float(value).is_integer() else value


def _concat(current: Any, addition: Any, prepend: bool, name: Optional[str]) -> Any:
    if current is None:
        return addition if isinstance(addition, str) else [addition]
    if isinstance(current, list):
        return [addition] + current if prepend else current + [addition]
    if isinstance(current, str):
        text = to_text(addition)
        return text + current if prepend else current + text
    raise ActionConfigError(f"Cannot append to variable {name!r} of type {type(current).__name__}")


def _transform(value: Any, transformation: Optional[str]) -> Any:
    if transformation == "uppercase":
        return to_text(value).upper()
    if transformation == "lowercase":
        return to_text(value).lower()
    if transformation == "trim":
        return to_text(value).strip()
    if transformation == "length":
        if isinstance(value, (list, dict, str)):
            return len(value)
        return len(to_text(value))
    if transformation == "reverse":
        if isinstance(value, list):
            return list(reversed(value))
        return to_text(value)[::-1]
    if transformation == "json_encode":
        return json.dumps(value, default=str)
    if transformation == "json_decode":
        try:
            return json.loads(to_text(value))
        except ValueError as e:
            raise StepFailed(f"Invalid JSON: {e}", retryable=False, kind="semantic") from e
    raise ActionConfigError(f"Unsupported transformation {transformation!r}")
