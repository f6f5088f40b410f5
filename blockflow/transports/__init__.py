"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional
from urllib.parse import urlsplit

from ..config import BlockflowConfig, RedisConfig, load_config
from ..utils.urls import resolve_backend
from .base import BaseTransport
from .inmemory import InMemoryTransport

QUEUE_SCHEMES = {
    "inmemory": "inmemory",
    "memory": "inmemory",
    "redis": "redis",
    "rabbitmq": "rabbitmq",
    "amqp": "rabbitmq",
    "amqps": "rabbitmq",
}


def _redis_settings(url: str, defaults: RedisConfig) -> RedisConfig:
    parts = urlsplit(url)
    db = parts.path.lstrip("/")
    return RedisConfig(
        host=parts.hostname or defaults.host,
        port=parts.port or defaults.port,
        db=int(db) if db else defaults.db,
        password=parts.password or defaults.password,
    )


def get_transport(
    backend: Optional[str] = None, config: Optional[BlockflowConfig] = None
) -> BaseTransport:
    """Build the queue transport named by ``backend``.

    ``backend`` (or ``BLOCKFLOW_QUEUE``, or ``queue.backend`` in the config)
    is a backend name or a broker URL such as ``redis://cache:6379/2`` or
    ``amqp://user:pw@broker/``; a URL overrides the connection settings from
    the config. The transport connects on first use.
    """

    config = config or load_config()
    target = resolve_backend(
        backend or os.getenv("BLOCKFLOW_QUEUE") or config.queue.backend, QUEUE_SCHEMES
    )

    if target.backend == "redis":
        from .redis import RedisTransport

        settings = config.queue.redis
        if target.url:
            settings = _redis_settings(target.url, settings)
        return RedisTransport(**settings.model_dump())
    if target.backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        return RabbitMQTransport(
            url=target.url or config.queue.rabbitmq.url,
            prefetch_count=config.queue.prefetch_count,
        )
    return InMemoryTransport()


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
