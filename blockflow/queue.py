"""Execution queue: durable hand-off between the request path and workers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .constants import DEFAULT_PREFETCH_COUNT, EXECUTION_QUEUE
from .contracts import ExecutionJob
from .errors import InfrastructureError
from .transports import BaseTransport

logger = logging.getLogger(__name__)

JobHandler = Callable[[ExecutionJob], Awaitable[Any]]


class ExecutionQueue:
    """Producer and competing-consumer API over a transport.

    ``prefetch_count`` caps how many jobs this consumer holds unacknowledged,
    and therefore how many executions it runs concurrently.
    """

    def __init__(
        self,
        transport: BaseTransport,
        queue_name: str = EXECUTION_QUEUE,
        prefetch_count: int = DEFAULT_PREFETCH_COUNT,
    ) -> None:
        if prefetch_count < 1:
            raise ValueError("prefetch_count must be at least 1")
        self.transport = transport
        self.queue_name = queue_name
        self.prefetch_count = prefetch_count

    async def enqueue(self, execution_id: str, workflow_id: str) -> ExecutionJob:
        """Publish a persistent job for ``execution_id``.

        Raises:
            QueueUnavailable: If the broker cannot be reached.
        """
        job = ExecutionJob(execution_id=execution_id, workflow_id=workflow_id)
        await self.transport.publish(self.queue_name, job)
        logger.info(
            f"Enqueued execution {execution_id} for workflow {workflow_id} on {self.queue_name}"
        )
        return job

    async def consume(self, handler: JobHandler, lifespan: Optional[float] = None) -> None:
        """Invoke ``handler`` once per delivered job until ``lifespan`` expires.

        A job is acknowledged only after ``handler`` returns. Infrastructure
        errors requeue it for redelivery; any other error dead-letters it.
        """
        slots = asyncio.Semaphore(self.prefetch_count)
        tasks: Set[asyncio.Task] = set()
        deliveries = self.transport.subscribe(self.queue_name, lifespan=lifespan)
        try:
            while True:
                await slots.acquire()
                try:
                    raw_message, job = await deliveries.__anext__()
                except StopAsyncIteration:
                    slots.release()
                    break
                task = asyncio.create_task(self._process(handler, raw_message, job, slots))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        finally:
            await deliveries.aclose()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

    async def _process(
        self,
        handler: JobHandler,
        raw_message: Any,
        job: ExecutionJob,
        slots: asyncio.Semaphore,
    ) -> None:
        try:
            await handler(job)
        except InfrastructureError as exc:
            logger.error(
                f"Infrastructure failure handling execution {job.execution_id}: {exc}; requeuing"
            )
            await self.transport.nack(raw_message, requeue=True)
        except Exception:
            logger.exception(
                f"Unhandled error for execution {job.execution_id}; dead-lettering message"
            )
            await self.transport.nack(raw_message, requeue=False)
        else:
            await self.transport.ack(raw_message)
        finally:
            slots.release()

    async def stats(self) -> Dict[str, int]:
        """Message counts of the execution queue and its dead-letter queue."""
        return await self.transport.stats(self.queue_name)

    async def close(self) -> None:
        await self.transport.disconnect()
