"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import JobEvent
from .base import BaseTransport

RawJob = Tuple[str, JobEvent]


class InMemoryTransport(BaseTransport[RawJob]):
    """Simple in-process queue for unit tests.

    ``published`` keeps every (topic, event) pair ever sent, in order.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawJob]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.published: List[RawJob] = []

    async def publish(self, topic: str, event: JobEvent) -> None:
        """Publish event to in-memory queue."""
        raw = (topic, event)
        async with self._lock:
            self._queues[topic].append(raw)
            self.published.append(raw)

    def pending(self, topic: str) -> List[JobEvent]:
        """Events waiting on ``topic``, oldest first."""
        return [event for _, event in self._queues[topic]]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawJob, JobEvent]]:
        """Subscribe to events from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        start_time = asyncio.get_running_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_running_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            raw_message: Optional[RawJob] = None
            async with self._lock:
                if self._queues[topic]:
                    raw_message = self._queues[topic].popleft()
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawJob) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawJob, requeue: bool = True) -> None:
        """Put the message back at the head of its queue when ``requeue`` is set."""
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].appendleft(raw_message)
