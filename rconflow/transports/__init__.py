"""Event transports: where normalized trigger events travel to the listener."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from ..config import RconflowConfig, load_config
from ..contracts import TriggerEvent
from .base import BaseTransport
from .inmemory import InMemoryTransport

logger = logging.getLogger(__name__)


def _redis(config: RconflowConfig) -> BaseTransport:
    from .redis import RedisTransport

    redis_conf = config.transport.redis
    return RedisTransport(
        host=redis_conf.host,
        port=redis_conf.port,
        db=redis_conf.db,
        password=redis_conf.password,
    )


_BACKENDS: Dict[str, Callable[[RconflowConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[RconflowConfig] = None
) -> BaseTransport:
    """Build the transport carrying events on ``config.event_topic``.

    ``backend`` overrides ``transport.backend`` (which ``RCONFLOW_TRANSPORT``
    already overrides in :func:`load_config`).
    """
    config = config or load_config()
    name = (backend or config.transport.backend).lower()
    builder = _BACKENDS.get(name)
    if builder is None:
        raise ValueError(f"Unsupported transport backend: {name}")
    logger.debug(f"Using {name} transport for topic {config.event_topic}")
    return builder(config)


async def publish_event(
    event: TriggerEvent,
    transport: Optional[BaseTransport] = None,
    config: Optional[RconflowConfig] = None,
) -> None:
    """Publish one event to the configured event topic, then disconnect."""
    config = config or load_config()
    transport = transport or get_transport(config=config)
    await transport.connect()
    try:
        await transport.publish(config.event_topic, event)
        logger.info(
            f"Published {event.event_type.value} event {event.id} "
            f"for server {event.server_id} to {config.event_topic}"
        )
    finally:
        await transport.disconnect()


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport", "publish_event"]
