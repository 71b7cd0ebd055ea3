"""Actions that only touch engine state."""

from __future__ import annotations

from typing import ClassVar

from ..contracts import LogMessageConfig, SetVariableConfig
from .base import ActionContext, ActionResult


class LogMessageAction:
    config_model: ClassVar = LogMessageConfig

    async def execute(self, config: LogMessageConfig, context: ActionContext) -> ActionResult:
        await context.log(config.message, level=config.level)
        return ActionResult.success({"message": config.message, "level": config.level})


class SetVariableAction:
    config_model: ClassVar = SetVariableConfig

    async def execute(self, config: SetVariableConfig, context: ActionContext) -> ActionResult:
        if not config.variable_name:
            return ActionResult.failure("configuration", "variable_name is required")
        context.variables.set(config.variable_name, config.variable_value)
        return ActionResult.success(
            {"variable_name": config.variable_name, "variable_value": config.variable_value}
        )
