"""Workflow orchestrator: turns events into executions and runs them."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from .actions import ActionDispatcher
from .actions.base import BanService, RconExecutor
from .config import EngineConfig
from .contracts import EventType, TriggerEvent
from .exceptions import ExecutionAborted, StepFailed, WorkflowDefinitionError
from .matcher import TriggerMatcher
from .persistence.models import Execution, Workflow
from .persistence.repository import WorkflowRepository
from .recorder import ExecutionRecorder
from .steps import ExecutionState, StepExecutor
from .utils.retry import retry_async
from .variables import KVStore, VariableStore

logger = logging.getLogger(__name__)


class WorkflowOrchestrator:
    """Match events against workflows and run each execution as a task.

    Every matching trigger starts its own execution. Executions run
    concurrently and never share variables.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        engine: Optional[EngineConfig] = None,
        dispatcher: Optional[ActionDispatcher] = None,
        matcher: Optional[TriggerMatcher] = None,
        recorder: Optional[ExecutionRecorder] = None,
        rcon: Optional[RconExecutor] = None,
        ban_service: Optional[BanService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.repository = repository
        self.engine = engine or EngineConfig()
        self.matcher = matcher or TriggerMatcher()
        self.recorder = recorder or ExecutionRecorder(
            repository, attempts=self.engine.persistence_retries
        )
        self.executor = StepExecutor(
            dispatcher or ActionDispatcher(),
            self.recorder,
            self.engine,
            rcon=rcon,
            ban_service=ban_service,
            http_client=http_client,
        )
        self._tasks: Dict[str, asyncio.Task] = {}
        limit = self.engine.max_concurrent_executions
        self._semaphore = asyncio.Semaphore(limit) if limit else None

    # ------------------------------------------------------------------
    async def on_event(self, event: TriggerEvent) -> List[Execution]:
        """Start an execution for every matching trigger of ``event``."""
        workflows = await self.repository.list_workflows(
            server_id=event.server_id, enabled_only=True
        )
        executions: List[Execution] = []
        for workflow in workflows:
            for trigger in self.matcher.matching_triggers(event, workflow):
                try:
                    executions.append(await self._start(workflow, trigger.id, event))
                except Exception:
                    logger.exception(
                        f"Failed to start workflow {workflow.id} (trigger {trigger.id}) "
                        f"for event {event.id}"
                    )
        if executions:
            logger.info(
                f"Event {event.event_type.value} on server {event.server_id} "
                f"started {len(executions)} execution(s)"
            )
        return executions

    async def execute_manually(
        self,
        workflow: Workflow,
        payload: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
    ) -> Execution:
        """Run ``workflow`` now, bypassing trigger conditions."""
        trigger = workflow.definition.first_enabled_trigger()
        if trigger is None:
            raise WorkflowDefinitionError(
                f"Workflow {workflow.id} has no enabled trigger to record"
            )
        event = TriggerEvent(
            event_type=EventType.MANUAL_TRIGGER,
            server_id=workflow.server_id,
            payload=payload or {},
            source="manual",
        )
        return await self._start(
            workflow, trigger.id, event, variables=variables, triggered_by=triggered_by
        )

    def running_executions(self) -> List[str]:
        return list(self._tasks)

    async def wait_for(self, execution_id: str) -> None:
        """Wait for one execution if it is still running."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def drain(self) -> None:
        """Wait until every in-flight execution has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    async def _start(
        self,
        workflow: Workflow,
        trigger_id: str,
        event: TriggerEvent,
        variables: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
    ) -> Execution:
        definition = workflow.definition.model_copy(deep=True)
        execution = Execution(
            workflow_id=workflow.id,
            server_id=event.server_id,
            trigger_id=trigger_id,
            event_type=event.event_type.value,
            trigger_data=event.snapshot(),
        )
        execution.transition("running")
        await self.repository.create_execution(execution)

        store = VariableStore(definition.variables)
        for name, value in (variables or {}).items():
            store.set(name, value)

        state = ExecutionState(
            execution=execution,
            workflow=workflow,
            definition=definition,
            variables=store,
            kv=KVStore(self.repository, workflow.id),
            trigger_event=dict(event.payload),
            metadata={
                "execution_id": execution.id,
                "workflow_id": workflow.id,
                "workflow_name": workflow.name,
                "server_id": event.server_id,
                "trigger_id": trigger_id,
                "event_id": event.id,
                "event_type": event.event_type.value,
                "event_timestamp": event.timestamp.isoformat(),
                "source": event.source,
                "triggered_by": triggered_by,
            },
        )
        snapshot = execution.model_copy(deep=True)
        task = asyncio.create_task(self._run(state), name=f"execution-{execution.id}")
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(execution.id, None))
        logger.info(
            f"Started execution {execution.id} of workflow {workflow.id} "
            f"(trigger {trigger_id})"
        )
        return snapshot

    async def _run(self, state: ExecutionState) -> None:
        if self._semaphore is None:
            await self._execute(state)
            return
        async with self._semaphore:
            await self._execute(state)

    async def _execute(self, state: ExecutionState) -> None:
        execution = state.execution
        status, error = "completed", None
        try:
            await asyncio.wait_for(
                self.executor.run(state), self.engine.execution_timeout_s
            )
        except StepFailed as e:
            status, error = "failed", str(e)
        except asyncio.TimeoutError:
            status = "error"
            error = f"Execution timed out after {self.engine.execution_timeout_s}s"
        except ExecutionAborted as e:
            status, error = "error", str(e)
        except Exception as e:
            logger.exception(f"Execution {execution.id} crashed")
            status, error = "error", f"Internal error: {e}"

        execution.transition(status, error)
        await retry_async(
            lambda: self.repository.update_execution(execution),
            self.engine.persistence_retries,
            f"storing final status of execution {execution.id}",
            scale=0.1,
        )
        log = logger.info if status == "completed" else logger.warning
        log(
            f"Execution {execution.id} of workflow {execution.workflow_id} {status}"
            + (f": {error}" if error else "")
        )
