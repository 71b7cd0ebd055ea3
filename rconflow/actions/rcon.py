"""Actions that talk to the game server over RCON."""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Dict

from ..contracts import (
    AdminBroadcastConfig,
    BanPlayerConfig,
    BanPlayerWithEvidenceConfig,
    ChatMessageConfig,
    KickPlayerConfig,
    RconCommandConfig,
    WarnPlayerConfig,
)
from .base import ActionContext, ActionResult

logger = logging.getLogger(__name__)


def kick_command(player_id: str, reason: str) -> str:
    return f'AdminKick "{player_id}" {reason}'


def ban_command(player_id: str, duration_days: float, reason: str) -> str:
    return f'AdminBan "{player_id}" {duration_days:.0f} {reason}'


def warn_command(player_id: str, message: str) -> str:
    return f'AdminWarn "{player_id}" {message}'


def broadcast_command(message: str) -> str:
    return f"AdminBroadcast {message}"


def chat_message_command(target_player: str, message: str) -> str:
    return f'AdminChatMessage "{target_player}" {message}'


async def send_rcon(context: ActionContext, command: str) -> ActionResult:
    """Send ``command`` through the context's RCON executor."""
    if context.rcon is None:
        return ActionResult.failure(
            "configuration",
            "No RCON executor is available for this server",
            detail={"server_id": context.server_id},
        )
    try:
        response = await context.rcon.execute(context.server_id, command)
    except Exception as e:
        logger.warning(
            f"RCON command failed for server {context.server_id} "
            f"(execution {context.execution_id}): {e}"
        )
        return ActionResult.failure(
            "transport", f"RCON command failed: {e}", detail={"command": command}
        )
    return ActionResult.success({"command": command, "response": response})


class RconCommandAction:
    config_model: ClassVar = RconCommandConfig

    async def execute(self, config: RconCommandConfig, context: ActionContext) -> ActionResult:
        if not config.command.strip():
            return ActionResult.failure("configuration", "command must not be empty")
        return await send_rcon(context, config.command)


class AdminBroadcastAction:
    config_model: ClassVar = AdminBroadcastConfig

    async def execute(self, config: AdminBroadcastConfig, context: ActionContext) -> ActionResult:
        return await send_rcon(context, broadcast_command(config.message))


class ChatMessageAction:
    config_model: ClassVar = ChatMessageConfig

    async def execute(self, config: ChatMessageConfig, context: ActionContext) -> ActionResult:
        return await send_rcon(
            context, chat_message_command(config.target_player, config.message)
        )


class KickPlayerAction:
    config_model: ClassVar = KickPlayerConfig

    async def execute(self, config: KickPlayerConfig, context: ActionContext) -> ActionResult:
        if not config.player_id:
            return ActionResult.failure("configuration", "player_id is required")
        return await send_rcon(context, kick_command(config.player_id, config.reason))


class BanPlayerAction:
    config_model: ClassVar = BanPlayerConfig

    async def execute(self, config: BanPlayerConfig, context: ActionContext) -> ActionResult:
        if not config.player_id:
            return ActionResult.failure("configuration", "player_id is required")
        return await send_rcon(
            context, ban_command(config.player_id, config.duration, config.reason)
        )


class BanPlayerWithEvidenceAction:
    """Ban through the ban service, attaching the triggering event as evidence."""

    config_model: ClassVar = BanPlayerWithEvidenceConfig

    async def execute(
        self, config: BanPlayerWithEvidenceConfig, context: ActionContext
    ) -> ActionResult:
        if not config.player_id:
            return ActionResult.failure("configuration", "player_id is required")
        if context.ban_service is None:
            return ActionResult.failure(
                "configuration", "No ban service is available for this server"
            )
        evidence: Dict[str, Any] = {
            "event_type": context.metadata.get("event_type"),
            "event_id": context.metadata.get("event_id"),
            "server_id": context.server_id,
            "payload": context.trigger_event,
            "timestamp": context.metadata.get("event_timestamp"),
        }
        if config.evidence_text:
            evidence["text"] = config.evidence_text
        try:
            ban = await context.ban_service.ban_with_evidence(
                server_id=context.server_id,
                player_id=config.player_id,
                duration_days=config.duration,
                reason=config.reason,
                evidence=evidence,
                rule_id=config.rule_id,
            )
        except Exception as e:
            return ActionResult.failure("transport", f"Ban failed: {e}")
        return ActionResult.success(
            {"player_id": config.player_id, "duration": config.duration, "ban": ban}
        )


class WarnPlayerAction:
    config_model: ClassVar = WarnPlayerConfig

    async def execute(self, config: WarnPlayerConfig, context: ActionContext) -> ActionResult:
        if not config.player_id:
            return ActionResult.failure("configuration", "player_id is required")
        return await send_rcon(context, warn_command(config.player_id, config.message))
