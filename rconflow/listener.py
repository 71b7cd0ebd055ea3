"""Consume events from a transport and hand them to the orchestrator."""

from __future__ import annotations

import logging
from typing import Optional

from .scheduler import WorkflowOrchestrator
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EventListener:
    """Listens on the event topic and starts workflow executions."""

    def __init__(
        self,
        transport: BaseTransport,
        orchestrator: WorkflowOrchestrator,
        topic: str,
    ) -> None:
        self._transport = transport
        self._orchestrator = orchestrator
        self._topic = topic
        self.processed = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Process events until ``lifespan`` expires, then wait for running executions."""
        logger.info(f"Listening for events on {self._topic}")
        try:
            async for raw_message, event in self._transport.subscribe(
                self._topic, lifespan=lifespan
            ):
                try:
                    executions = await self._orchestrator.on_event(event)
                except Exception:
                    logger.exception(
                        f"Failed to dispatch event {event.id} ({event.event_type.value}) "
                        f"for server {event.server_id}"
                    )
                    await self._transport.nack(raw_message, requeue=False)
                    continue
                self.processed += 1
                logger.debug(
                    f"Event {event.id} started {len(executions)} execution(s)"
                )
                await self._transport.ack(raw_message)
        finally:
            await self._orchestrator.drain()
            await self._transport.disconnect()
