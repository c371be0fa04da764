"""Job transports and the factory that picks one from configuration."""

from __future__ import annotations

import os
from typing import Optional

from ..config import IntentEngineConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[IntentEngineConfig] = None
) -> BaseTransport:
    """Return the job transport named by ``backend``.

    Falls back to ``INTENT_ENGINE_TRANSPORT`` and then to ``transport.backend``
    of the loaded configuration. Broker clients are imported on first use.
    """

    settings = (config or load_config()).transport
    name = (backend or os.getenv("INTENT_ENGINE_TRANSPORT") or settings.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        from .redis import RedisTransport

        return RedisTransport(**settings.redis.model_dump())
    if name == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        return RabbitMQTransport(url=settings.rabbitmq.url)
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
