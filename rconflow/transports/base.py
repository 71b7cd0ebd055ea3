"""Base transport interface for rconflow event delivery."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import TriggerEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport carrying ``TriggerEvent`` JSON on a topic."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    async def publish(self, topic: str, event: TriggerEvent) -> None:
        """Send an event to a topic/queue."""
        await self.publish_raw(topic, event.to_json())

    @abc.abstractmethod
    async def publish_raw(self, topic: str, data: str) -> None:
        """Send an already serialized message to a topic/queue."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, TriggerEvent]]:
        """Yield raw transport message and TriggerEvent pairs.

        Messages that do not parse as a ``TriggerEvent`` are logged and
        dropped.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)
