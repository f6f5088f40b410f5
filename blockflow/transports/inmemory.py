"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..constants import dead_letter_queue
from ..contracts import ExecutionJob
from ..errors import PoisonMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InMemoryDelivery:
    """A message handed to a consumer and not yet settled."""

    queue: str
    body: str
    delivery_tag: int


class InMemoryTransport(BaseTransport[InMemoryDelivery]):
    """Simple in-process queue for unit tests.

    Mirrors broker semantics closely enough to exercise at-least-once
    handling: deliveries stay unacknowledged until settled and can be
    redelivered with :meth:`redeliver_unacked`.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._unacked: Dict[int, InMemoryDelivery] = {}
        self._tags = itertools.count(1)
        self._lock = asyncio.Lock()

    async def publish(self, queue: str, job: ExecutionJob) -> None:
        """Publish job to in-memory queue."""
        await self.publish_raw(queue, job.to_json())

    async def publish_raw(self, queue: str, body: str) -> None:
        async with self._lock:
            self._queues[queue].append(body)

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[InMemoryDelivery, ExecutionJob]]:
        """Subscribe to messages from queue.

        Args:
            queue: The queue to subscribe to
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            delivery = None
            async with self._lock:
                if self._queues[queue]:
                    body = self._queues[queue].popleft()
                    delivery = InMemoryDelivery(queue, body, next(self._tags))
                    self._unacked[delivery.delivery_tag] = delivery

            if delivery is None:
                await asyncio.sleep(0.01)
                continue

            try:
                job = ExecutionJob.from_json(delivery.body)
            except PoisonMessage as exc:
                logger.error(f"Dead-lettering malformed message on {queue}: {exc}")
                await self.nack(delivery, requeue=False)
                continue
            yield delivery, job

    async def ack(self, raw_message: InMemoryDelivery) -> None:
        async with self._lock:
            self._unacked.pop(raw_message.delivery_tag, None)

    async def nack(self, raw_message: InMemoryDelivery, requeue: bool = True) -> None:
        async with self._lock:
            if self._unacked.pop(raw_message.delivery_tag, None) is None:
                return
            if requeue:
                self._queues[raw_message.queue].appendleft(raw_message.body)
            else:
                self._queues[dead_letter_queue(raw_message.queue)].append(raw_message.body)

    async def redeliver_unacked(self) -> int:
        """Return every unsettled delivery to its queue, as after a consumer crash."""
        async with self._lock:
            pending = sorted(self._unacked.values(), key=lambda d: d.delivery_tag)
            self._unacked.clear()
            for delivery in reversed(pending):
                self._queues[delivery.queue].appendleft(delivery.body)
            return len(pending)

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    async def stats(self, queue: str) -> Dict[str, int]:
        dlq = dead_letter_queue(queue)
        return {queue: len(self._queues[queue]), dlq: len(self._queues[dlq])}
