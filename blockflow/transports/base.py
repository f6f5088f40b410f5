"""Base transport interface for the execution queue."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Dict, Generic, Optional, Tuple, TypeVar

from ..contracts import ExecutionJob

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for message brokers.

    A transport owns its broker connection. It is opened lazily on first use
    and cached until :meth:`disconnect`; reconnecting after a failure is left
    to the caller.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, queue: str, job: ExecutionJob) -> None:
        """Durably publish a job; returns once the broker accepted it."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, ExecutionJob]]:
        """Yield raw transport message and ExecutionJob pairs.

        Malformed bodies are dead-lettered by the transport and never yielded.

        Args:
            queue: The queue to consume from
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge; without requeue the message is dead-lettered."""
        raise NotImplementedError

    async def stats(self, queue: str) -> Dict[str, int]:
        """Ready message counts of ``queue`` and its dead-letter queue."""
        return {}
