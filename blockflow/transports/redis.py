"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError

from ..constants import dead_letter_queue
from ..contracts import ExecutionJob
from ..errors import PoisonMessage, QueueUnavailable
from .base import BaseTransport

logger = logging.getLogger(__name__)

KEY_PREFIX = "blockflow:"


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis-based transport for distributed messaging.

    Uses the reliable-queue pattern: a delivery is atomically moved from the
    queue list to a per-queue processing list, and only removed from there on
    ack. Messages left in the processing list by a crashed consumer can be
    recovered with :meth:`requeue_processing`.
    """

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

    @staticmethod
    def _key(queue: str) -> str:
        return f"{KEY_PREFIX}{queue}"

    @classmethod
    def _processing_key(cls, queue: str) -> str:
        return f"{cls._key(queue)}:processing"

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is not None:
            return
        client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await client.ping()
        except (RedisConnectionError, OSError) as exc:
            await client.aclose()
            raise QueueUnavailable(
                f"Cannot connect to Redis at {self.host}:{self.port}: {exc}"
            ) from exc
        self._redis = client

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, queue: str, job: ExecutionJob) -> None:
        """Publish job to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        try:
            await self._redis.lpush(self._key(queue), job.to_json())
        except RedisConnectionError as exc:
            raise QueueUnavailable(f"Failed to publish to {queue}: {exc}") from exc

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], ExecutionJob]]:
        """Subscribe to jobs from Redis queue."""
        if not self._redis:
            await self.connect()

        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            body = await self._redis.blmove(
                self._key(queue),
                self._processing_key(queue),
                timeout=1,
                src="RIGHT",
                dest="LEFT",
            )
            if body is None:
                continue

            raw = (queue, body)
            try:
                job = ExecutionJob.from_json(body)
            except PoisonMessage as exc:
                logger.error(f"Dead-lettering malformed message on {queue}: {exc}")
                await self.nack(raw, requeue=False)
                continue
            yield raw, job

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """Drop the delivery from the processing list."""
        queue, body = raw_message
        await self._redis.lrem(self._processing_key(queue), 1, body)

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        queue, body = raw_message
        target = self._key(queue) if requeue else self._key(dead_letter_queue(queue))
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing_key(queue), 1, body)
            # Requeued messages go to the consuming end so they are redelivered first.
            if requeue:
                pipe.rpush(target, body)
            else:
                pipe.lpush(target, body)
            await pipe.execute()

    async def requeue_processing(self, queue: str) -> int:
        """Move every in-flight delivery back to the queue. Call with no live consumers."""
        if not self._redis:
            await self.connect()
        moved = 0
        while await self._redis.lmove(
            self._processing_key(queue), self._key(queue), src="LEFT", dest="RIGHT"
        ):
            moved += 1
        return moved

    async def stats(self, queue: str) -> Dict[str, int]:
        if not self._redis:
            await self.connect()
        dlq = dead_letter_queue(queue)
        return {
            queue: await self._redis.llen(self._key(queue)),
            dlq: await self._redis.llen(self._key(dlq)),
        }
