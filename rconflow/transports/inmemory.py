"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from pydantic import ValidationError

from ..contracts import TriggerEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)


class InMemoryTransport(BaseTransport[str]):
    """Simple in-process queue of serialized events."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish_raw(self, topic: str, data: str) -> None:
        """Publish message to in-memory queue."""
        async with self._lock:
            self._queues[topic].append(data)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, TriggerEvent]]:
        """Subscribe to events from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            raw: Optional[str] = None
            async with self._lock:
                if self._queues[topic]:
                    raw = self._queues[topic].popleft()

            if raw is None:
                await asyncio.sleep(0.05)
                continue
            try:
                event = TriggerEvent.from_json(raw)
            except ValidationError as e:
                logger.warning(f"Dropping malformed event on {topic}: {e}")
                continue
            yield raw, event

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
