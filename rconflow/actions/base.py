"""Shared types for workflow actions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Literal, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from ..config import EngineConfig

if TYPE_CHECKING:
    from ..recorder import ExecutionRecorder
    from ..variables import KVStore, VariableStore

ErrorKind = Literal["configuration", "transport", "semantic", "timeout", "script"]


class ActionError(BaseModel):
    kind: ErrorKind
    message: str
    detail: Dict[str, Any] = Field(default_factory=dict)
    retryable: bool = True


class ActionResult(BaseModel):
    """Outcome of one action invocation."""

    status: Literal["success", "failure"]
    output: Any = None
    error: Optional[ActionError] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(cls, output: Any = None) -> "ActionResult":
        return cls(status="success", output=output)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
        output: Any = None,
    ) -> "ActionResult":
        if retryable is None:
            retryable = kind != "configuration"
        return cls(
            status="failure",
            output=output,
            error=ActionError(
                kind=kind, message=message, detail=detail or {}, retryable=retryable
            ),
        )


class RconExecutor(Protocol):
    """Sends a raw RCON command to a game server and returns its response."""

    async def execute(self, server_id: str, command: str) -> str: ...


class BanService(Protocol):
    """Creates a ban backed by evidence from the triggering event."""

    async def ban_with_evidence(
        self,
        server_id: str,
        player_id: str,
        duration_days: float,
        reason: str,
        evidence: Dict[str, Any],
        rule_id: Optional[str] = None,
    ) -> Any: ...


@dataclass
class ActionContext:
    """Everything an action may read or touch while it runs."""

    execution_id: str
    workflow_id: str
    server_id: str
    variables: "VariableStore"
    kv: "KVStore"
    recorder: "ExecutionRecorder"
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    trigger_event: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    step_results: Dict[str, Any] = field(default_factory=dict)
    rcon: Optional[RconExecutor] = None
    ban_service: Optional[BanService] = None
    http_client: Optional[httpx.AsyncClient] = None
    engine: EngineConfig = field(default_factory=EngineConfig)

    def template_data(self) -> Dict[str, Any]:
        """Namespace ``${path}`` placeholders are resolved against."""
        data: Dict[str, Any] = dict(self.variables.as_dict())
        data.update(
            {
                "variables": self.variables.as_dict(),
                "trigger_event": self.trigger_event,
                "metadata": self.metadata,
                "step_results": self.step_results,
            }
        )
        return data

    async def log(self, message: str, level: str = "INFO") -> None:
        await self.recorder.record_message(
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            message=message,
            level=level,
            step_id=self.step_id,
            step_name=self.step_name,
            variables=self.variables.snapshot(),
        )


class Executable(Protocol):
    """An action handler. ``config_model`` validates its config."""

    config_model: ClassVar[type[BaseModel]]

    async def execute(self, config: Any, context: ActionContext) -> ActionResult: ...
