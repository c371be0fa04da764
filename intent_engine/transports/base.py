"""Base transport interface for background job events."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import JobEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for job brokers.

    Delivery is at-least-once: a consumer may see the same ``JobEvent`` more
    than once and must treat it idempotently.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: JobEvent) -> None:
        """Send an event to a topic/queue."""
        raise NotImplementedError

    async def send(self, event: JobEvent) -> None:
        """Publish ``event`` on the topic named after it."""
        await self.publish(event.name, event)

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, JobEvent]]:
        """Yield raw transport message and JobEvent pairs.

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
