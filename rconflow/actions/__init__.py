"""Action registry and dispatcher."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError

from .base import (
    ActionContext,
    ActionError,
    ActionResult,
    BanService,
    Executable,
    RconExecutor,
)
from .builtin import LogMessageAction, SetVariableAction
from .http import DiscordMessageAction, HttpRequestAction, WebhookAction
from .lua import LuaScriptAction
from .rcon import (
    AdminBroadcastAction,
    BanPlayerAction,
    BanPlayerWithEvidenceAction,
    ChatMessageAction,
    KickPlayerAction,
    RconCommandAction,
    WarnPlayerAction,
)

logger = logging.getLogger(__name__)


def default_handlers() -> Dict[str, Executable]:
    return {
        "rcon_command": RconCommandAction(),
        "admin_broadcast": AdminBroadcastAction(),
        "chat_message": ChatMessageAction(),
        "kick_player": KickPlayerAction(),
        "ban_player": BanPlayerAction(),
        "ban_player_with_evidence": BanPlayerWithEvidenceAction(),
        "warn_player": WarnPlayerAction(),
        "http_request": HttpRequestAction(),
        "webhook": WebhookAction(),
        "discord_message": DiscordMessageAction(),
        "log_message": LogMessageAction(),
        "set_variable": SetVariableAction(),
        "lua_script": LuaScriptAction(),
    }


class ActionDispatcher:
    """Route an action kind to its registered handler."""

    def __init__(self, handlers: Optional[Dict[str, Executable]] = None) -> None:
        self._handlers: Dict[str, Executable] = (
            dict(handlers) if handlers is not None else default_handlers()
        )

    def register(self, action_type: str, handler: Executable) -> None:
        """Add or replace the handler for ``action_type``."""
        self._handlers[action_type] = handler

    async def execute(
        self, action_type: str, config: Any, context: ActionContext
    ) -> ActionResult:
        """Validate ``config`` for ``action_type`` and run the handler.

        Unknown kinds and invalid configs are returned as ``configuration``
        failures.
        """
        handler = self._handlers.get(action_type)
        if handler is None:
            logger.warning(
                f"Unknown action type {action_type!r} in workflow {context.workflow_id}"
            )
            return ActionResult.failure(
                "configuration", f"Unknown action type: {action_type}"
            )

        if isinstance(config, BaseModel):
            config = config.model_dump()
        try:
            typed = handler.config_model.model_validate(config)
        except ValidationError as e:
            return ActionResult.failure(
                "configuration",
                f"Invalid config for {action_type}: {e}",
                detail={
                    "errors": [
                        {"loc": [str(p) for p in err["loc"]], "msg": err["msg"]}
                        for err in e.errors()
                    ]
                },
            )

        logger.debug(f"Executing {action_type} for execution {context.execution_id}")
        return await handler.execute(typed, context)


__all__ = [
    "ActionContext",
    "ActionDispatcher",
    "ActionError",
    "ActionResult",
    "BanService",
    "Executable",
    "RconExecutor",
    "default_handlers",
]
