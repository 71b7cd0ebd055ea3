"""Core contracts for the rconflow workflow engine.

Defines the canonical event envelope exchanged with event sources and the
versioned workflow definition executed by the engine.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    ValidationError,
    field_validator,
    model_validator,
)

from .constants import (
    CURRENT_DEFINITION_VERSION,
    DEFAULT_BAN_REASON,
    DEFAULT_KICK_REASON,
    SUPPORTED_DEFINITION_VERSIONS,
)
from .exceptions import WorkflowDefinitionError


class EventType(str, Enum):
    """Game server event kinds a trigger can listen for."""

    RCON_CHAT_MESSAGE = "RCON_CHAT_MESSAGE"
    RCON_PLAYER_WARNED = "RCON_PLAYER_WARNED"
    RCON_PLAYER_KICKED = "RCON_PLAYER_KICKED"
    RCON_PLAYER_BANNED = "RCON_PLAYER_BANNED"
    RCON_POSSESSED_ADMIN_CAMERA = "RCON_POSSESSED_ADMIN_CAMERA"
    RCON_UNPOSSESSED_ADMIN_CAMERA = "RCON_UNPOSSESSED_ADMIN_CAMERA"
    RCON_SQUAD_CREATED = "RCON_SQUAD_CREATED"
    RCON_SERVER_INFO = "RCON_SERVER_INFO"
    LOG_ADMIN_BROADCAST = "LOG_ADMIN_BROADCAST"
    LOG_DEPLOYABLE_DAMAGED = "LOG_DEPLOYABLE_DAMAGED"
    LOG_PLAYER_CONNECTED = "LOG_PLAYER_CONNECTED"
    LOG_PLAYER_DAMAGED = "LOG_PLAYER_DAMAGED"
    LOG_PLAYER_DIED = "LOG_PLAYER_DIED"
    LOG_PLAYER_WOUNDED = "LOG_PLAYER_WOUNDED"
    LOG_PLAYER_REVIVED = "LOG_PLAYER_REVIVED"
    LOG_PLAYER_POSSESS = "LOG_PLAYER_POSSESS"
    LOG_PLAYER_DISCONNECTED = "LOG_PLAYER_DISCONNECTED"
    LOG_JOIN_SUCCEEDED = "LOG_JOIN_SUCCEEDED"
    LOG_TICK_RATE = "LOG_TICK_RATE"
    LOG_GAME_EVENT_UNIFIED = "LOG_GAME_EVENT_UNIFIED"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"


class StepType(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    VARIABLE = "variable"
    DELAY = "delay"


class ActionType(str, Enum):
    RCON_COMMAND = "rcon_command"
    ADMIN_BROADCAST = "admin_broadcast"
    CHAT_MESSAGE = "chat_message"
    KICK_PLAYER = "kick_player"
    BAN_PLAYER = "ban_player"
    BAN_PLAYER_WITH_EVIDENCE = "ban_player_with_evidence"
    WARN_PLAYER = "warn_player"
    HTTP_REQUEST = "http_request"
    WEBHOOK = "webhook"
    DISCORD_MESSAGE = "discord_message"
    LOG_MESSAGE = "log_message"
    SET_VARIABLE = "set_variable"
    LUA_SCRIPT = "lua_script"


class TriggerEvent(BaseModel):
    """Canonical envelope for an event coming from a game server."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    server_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: Literal["rcon", "log", "manual", "api"] = "api"

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "TriggerEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy stored as an execution's trigger data."""
        return self.model_dump(mode="json")


# ----------------------------------------------------------------------
# Triggers and conditions


class Condition(BaseModel):
    """A single field comparison, e.g. ``steam_id equals 7656...``."""

    field: str
    operator: str
    value: Any = None
    type: Optional[Literal["string", "number", "boolean", "regex"]] = None


class Trigger(BaseModel):
    id: str
    name: str = ""
    event_type: EventType
    conditions: List[Condition] = Field(default_factory=list)
    enabled: bool = True


# ----------------------------------------------------------------------
# Error handling


ErrorAction = Literal["stop", "continue", "retry"]


class ErrorHandling(BaseModel):
    """Workflow-wide failure policy used when a step has no ``on_error``."""

    default_action: ErrorAction = "stop"
    max_retries: int = Field(default=0, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    retry_fallback: Literal["stop", "continue"] = "stop"


class OnError(BaseModel):
    """Per-step failure policy. Unset values come from ``ErrorHandling``."""

    action: Literal["stop", "continue", "retry", "goto"]
    max_retries: Optional[int] = Field(default=None, ge=0)
    retry_delay_ms: Optional[int] = Field(default=None, ge=0)
    fallback: Optional[Literal["stop", "continue"]] = None
    goto_step: Optional[str] = None

    @model_validator(mode="after")
    def _goto_requires_target(self) -> "OnError":
        if self.action == "goto" and not self.goto_step:
            raise ValueError("goto action requires a goto_step")
        return self


# ----------------------------------------------------------------------
# Action configs, one model per action kind


class _ActionConfig(BaseModel):
    # rendered templates may yield numbers for id-like fields
    model_config = ConfigDict(coerce_numbers_to_str=True)

    output_variable: Optional[str] = None


class RconCommandConfig(_ActionConfig):
    action_type: Literal["rcon_command"] = "rcon_command"
    command: str


class AdminBroadcastConfig(_ActionConfig):
    action_type: Literal["admin_broadcast"] = "admin_broadcast"
    message: str


class ChatMessageConfig(_ActionConfig):
    action_type: Literal["chat_message"] = "chat_message"
    target_player: str
    message: str


class KickPlayerConfig(_ActionConfig):
    action_type: Literal["kick_player"] = "kick_player"
    player_id: str
    reason: str = DEFAULT_KICK_REASON


class BanPlayerConfig(_ActionConfig):
    action_type: Literal["ban_player"] = "ban_player"
    player_id: str
    duration: float = Field(description="Ban length in days, 0 is permanent", ge=0)
    reason: str = DEFAULT_BAN_REASON


class BanPlayerWithEvidenceConfig(_ActionConfig):
    action_type: Literal["ban_player_with_evidence"] = "ban_player_with_evidence"
    player_id: str
    duration: float = Field(ge=0)
    reason: str = DEFAULT_BAN_REASON
    evidence_text: Optional[str] = None
    rule_id: Optional[str] = None


class WarnPlayerConfig(_ActionConfig):
    action_type: Literal["warn_player"] = "warn_player"
    player_id: str
    message: str


class HttpRequestConfig(_ActionConfig):
    action_type: Literal["http_request"] = "http_request"
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    fail_on_error: bool = False
    timeout_s: Optional[float] = None

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()


class WebhookConfig(_ActionConfig):
    action_type: Literal["webhook"] = "webhook"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)
    timeout_s: Optional[float] = None


class DiscordMessageConfig(_ActionConfig):
    action_type: Literal["discord_message"] = "discord_message"
    webhook_url: str
    message: str
    username: Optional[str] = None
    avatar_url: Optional[str] = None


LogLevel = Literal["DEBUG", "INFO", "WARN", "ERROR"]


class LogMessageConfig(_ActionConfig):
    action_type: Literal["log_message"] = "log_message"
    message: str
    level: LogLevel = "INFO"

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.upper()
            if value == "WARNING":
                value = "WARN"
        return value or "INFO"


class SetVariableConfig(_ActionConfig):
    action_type: Literal["set_variable"] = "set_variable"
    variable_name: str
    variable_value: Any


class LuaScriptConfig(_ActionConfig):
    """Lua action. Extra keys are passed to the script as ``workflow.config``."""

    model_config = ConfigDict(extra="allow")

    action_type: Literal["lua_script"] = "lua_script"
    script: str
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class UnknownActionConfig(_ActionConfig):
    """Placeholder for an action kind this engine does not implement.

    Loading keeps the definition usable; dispatching it fails the step.
    """

    model_config = ConfigDict(extra="allow")

    action_type: str


_ACTION_CONFIGS: Dict[str, type[_ActionConfig]] = {
    "rcon_command": RconCommandConfig,
    "admin_broadcast": AdminBroadcastConfig,
    "chat_message": ChatMessageConfig,
    "kick_player": KickPlayerConfig,
    "ban_player": BanPlayerConfig,
    "ban_player_with_evidence": BanPlayerWithEvidenceConfig,
    "warn_player": WarnPlayerConfig,
    "http_request": HttpRequestConfig,
    "webhook": WebhookConfig,
    "discord_message": DiscordMessageConfig,
    "log_message": LogMessageConfig,
    "set_variable": SetVariableConfig,
    "lua_script": LuaScriptConfig,
}


def _action_tag(value: Any) -> str:
    if isinstance(value, dict):
        action_type = value.get("action_type")
    else:
        action_type = getattr(value, "action_type", None)
    if isinstance(action_type, Enum):
        action_type = action_type.value
    return action_type if action_type in _ACTION_CONFIGS else "unknown"


ActionConfig = Annotated[
    Union[
        Annotated[RconCommandConfig, Tag("rcon_command")],
        Annotated[AdminBroadcastConfig, Tag("admin_broadcast")],
        Annotated[ChatMessageConfig, Tag("chat_message")],
        Annotated[KickPlayerConfig, Tag("kick_player")],
        Annotated[BanPlayerConfig, Tag("ban_player")],
        Annotated[BanPlayerWithEvidenceConfig, Tag("ban_player_with_evidence")],
        Annotated[WarnPlayerConfig, Tag("warn_player")],
        Annotated[HttpRequestConfig, Tag("http_request")],
        Annotated[WebhookConfig, Tag("webhook")],
        Annotated[DiscordMessageConfig, Tag("discord_message")],
        Annotated[LogMessageConfig, Tag("log_message")],
        Annotated[SetVariableConfig, Tag("set_variable")],
        Annotated[LuaScriptConfig, Tag("lua_script")],
        Annotated[UnknownActionConfig, Tag("unknown")],
    ],
    Discriminator(_action_tag),
]


def action_config_model(action_type: str) -> Optional[type[_ActionConfig]]:
    """Return the config model registered for ``action_type``."""
    return _ACTION_CONFIGS.get(action_type)


# ----------------------------------------------------------------------
# Non-action step configs


class ConditionStepConfig(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)
    logic: Literal["AND", "OR"] = "AND"
    on_true: Optional[str] = None
    on_false: Optional[str] = None

    @field_validator("logic", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


VariableOperation = Literal[
    "set",
    "increment",
    "decrement",
    "append",
    "prepend",
    "delete",
    "copy",
    "transform",
    "kv_get",
    "kv_set",
    "kv_delete",
]

Transformation = Literal[
    "uppercase", "lowercase", "trim", "length", "reverse", "json_encode", "json_decode"
]


class VariableStepConfig(BaseModel):
    operation: VariableOperation
    variable_name: Optional[str] = None
    value: Any = None
    source_field: Optional[str] = None
    expression: Optional[str] = None
    increment: float = 1
    decrement: float = 1
    source_variable: Optional[str] = None
    target_variable: Optional[str] = None
    transformation: Optional[Transformation] = None
    key: Optional[str] = None

    @model_validator(mode="after")
    def _check_required(self) -> "VariableStepConfig":
        op = self.operation
        if op == "copy":
            if not self.source_variable or not self.target_variable:
                raise ValueError("copy requires source_variable and target_variable")
        elif op in ("kv_set", "kv_delete"):
            if not self.key:
                raise ValueError(f"{op} requires key")
        elif not self.variable_name:
            raise ValueError(f"{op} requires variable_name")
        if op == "kv_get" and not self.key:
            raise ValueError("kv_get requires key")
        if op == "transform" and not self.transformation:
            raise ValueError("transform requires transformation")
        return self


class DelayStepConfig(BaseModel):
    delay_ms: int = Field(ge=0)


# ----------------------------------------------------------------------
# Steps


class _StepBase(BaseModel):
    id: str
    name: str = ""
    enabled: bool = True
    on_error: Optional[OnError] = None
    next_steps: List[str] = Field(default_factory=list)
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _default_name(self) -> "_StepBase":
        if not self.name:
            self.name = self.id
        return self


class ActionStep(_StepBase):
    type: Literal["action"] = "action"
    config: ActionConfig


class ConditionStep(_StepBase):
    type: Literal["condition"] = "condition"
    config: ConditionStepConfig = Field(default_factory=ConditionStepConfig)


class VariableStep(_StepBase):
    type: Literal["variable"] = "variable"
    config: VariableStepConfig


class DelayStep(_StepBase):
    type: Literal["delay"] = "delay"
    config: DelayStepConfig


Step = Annotated[
    Union[ActionStep, ConditionStep, VariableStep, DelayStep],
    Field(discriminator="type"),
]


# ----------------------------------------------------------------------
# Definition


class WorkflowDefinition(BaseModel):
    """Versioned, immutable-per-execution description of a workflow."""

    version: str = CURRENT_DEFINITION_VERSION
    triggers: List[Trigger] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    steps: List[Step] = Field(default_factory=list)
    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)

    @field_validator("version", mode="before")
    @classmethod
    def _check_version(cls, value: Any) -> str:
        if value is None or value == "":
            return CURRENT_DEFINITION_VERSION
        value = str(value)
        if value not in SUPPORTED_DEFINITION_VERSIONS:
            raise ValueError(
                f"unsupported definition version {value!r}, "
                f"expected one of {', '.join(SUPPORTED_DEFINITION_VERSIONS)}"
            )
        return value

    @model_validator(mode="after")
    def _check_step_graph(self) -> "WorkflowDefinition":
        ids: set[str] = set()
        for step in self.steps:
            if step.id in ids:
                raise ValueError(f"duplicate step id {step.id!r}")
            ids.add(step.id)

        for step in self.steps:
            targets = list(step.next_steps)
            if step.type == "condition":
                if len(step.next_steps) > 2:
                    raise ValueError(
                        f"condition step {step.id!r} takes at most two next_steps"
                    )
                targets += [t for t in (step.config.on_true, step.config.on_false) if t]
            elif len(step.next_steps) > 1:
                raise ValueError(f"step {step.id!r} may only have one next step")
            if step.on_error is not None and step.on_error.goto_step:
                targets.append(step.on_error.goto_step)
            for target in targets:
                if target not in ids:
                    raise ValueError(f"step {step.id!r} references unknown step {target!r}")
        return self

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_index(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        raise KeyError(step_id)

    def first_enabled_trigger(self) -> Optional[Trigger]:
        for trigger in self.triggers:
            if trigger.enabled:
                return trigger
        return None


def parse_definition(data: Any) -> WorkflowDefinition:
    """Validate ``data`` into a definition, raising ``WorkflowDefinitionError``."""
    if isinstance(data, WorkflowDefinition):
        return data
    try:
        if isinstance(data, (str, bytes)):
            return WorkflowDefinition.model_validate_json(data)
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise WorkflowDefinitionError(str(e)) from e
