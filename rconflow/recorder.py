"""Best-effort persistence of step logs and workflow log messages."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .persistence.models import ExecutionLog, LogMessage
from .persistence.repository import WorkflowRepository
from .utils.retry import retry_async

logger = logging.getLogger(__name__)
workflow_logger = logging.getLogger("rconflow.workflow")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


class ExecutionRecorder:
    """Append execution logs and messages through the repository.

    A write that keeps failing is dropped after ``attempts`` tries; the
    execution itself is never failed by a recording problem.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        attempts: int = 3,
        backoff_scale: float = 0.1,
    ) -> None:
        self._repository = repository
        self._attempts = attempts
        self._backoff_scale = backoff_scale

    async def record_step(self, log: ExecutionLog) -> None:
        logger.debug(
            f"Step {log.step_id} of execution {log.execution_id} "
            f"order={log.step_order} attempt={log.attempt}: {log.step_status}"
        )
        await retry_async(
            lambda: self._repository.append_execution_log(log),
            self._attempts,
            f"recording step {log.step_id} of execution {log.execution_id}",
            scale=self._backoff_scale,
        )

    async def record_message(
        self,
        execution_id: str,
        workflow_id: str,
        message: str,
        level: str = "INFO",
        step_id: Optional[str] = None,
        step_name: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LogMessage:
        level = level.upper()
        if level == "WARNING":
            level = "WARN"
        if level not in _LEVELS:
            level = "INFO"
        entry = LogMessage(
            execution_id=execution_id,
            workflow_id=workflow_id,
            step_id=step_id,
            step_name=step_name,
            log_level=level,
            message=message,
            variables=variables or {},
            metadata=metadata or {},
        )
        workflow_logger.log(
            _LEVELS[level],
            f"[workflow={workflow_id} execution={execution_id} step={step_id}] {message}",
        )
        await retry_async(
            lambda: self._repository.append_log_message(entry),
            self._attempts,
            f"recording log message of execution {execution_id}",
            scale=self._backoff_scale,
        )
        return entry
