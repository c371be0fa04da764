"""Redis transport for cross-process job delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import JobEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

QUEUE_PREFIX = "intent-engine"


class RedisTransport(BaseTransport[str]):
    """Redis list-backed transport; one list per job topic."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None
        self._topics: dict[str, str] = {}

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"{QUEUE_PREFIX}:{topic}"

    async def publish(self, topic: str, event: JobEvent) -> None:
        """Push event onto the topic's Redis list."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, JobEvent]]:
        """Pop events from the topic's Redis list."""
        if not self._redis:
            await self.connect()

        queue_name = self.queue_name(topic)
        start_time = asyncio.get_running_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_running_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, event_json = result
                try:
                    event = JobEvent.from_json(event_json)
                except ValidationError as e:
                    logger.error(f"Dropping malformed job on {queue_name}: {e}")
                    continue
                self._topics[event_json] = topic
                yield event_json, event

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """Message was removed by BRPOP; forget its topic."""
        self._topics.pop(raw_message, None)

    async def nack(self, raw_message: str, requeue: bool = True) -> None:
        topic = self._topics.pop(raw_message, None)
        if requeue and topic is not None and self._redis:
            await self._redis.rpush(self.queue_name(topic), raw_message)
