from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

from ..config import RetryConfig
from ..errors import BlockExecutionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PERMANENT_ERRORS: Tuple[Type[BaseException], ...] = (
    ValueError,
    TypeError,
    KeyError,
)


class RetryPolicy(BaseModel):
    """Exponential backoff policy shared by workers.

    ``min_timeout`` and ``max_timeout`` are milliseconds. The delay before
    retry ``k`` (1-indexed) is ``min_timeout * factor ** (k - 1)`` capped at
    ``max_timeout``.
    """

    attempts: int = Field(default=3, ge=1)
    factor: float = Field(default=2.0, ge=1.0)
    min_timeout: float = Field(default=1000, ge=0)
    max_timeout: float = Field(default=30000, ge=0)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(**config.model_dump())

    def compute_delay(self, retry: int) -> float:
        """Delay in milliseconds before retry number ``retry`` (1-indexed)."""
        if retry < 1:
            raise ValueError("retry numbers start at 1")
        delay = self.min_timeout * self.factor ** (retry - 1)
        return min(delay, self.max_timeout)

    def delays(self) -> Iterator[float]:
        """Yield every delay of the policy, one per retry."""
        for retry in range(1, self.attempts):
            yield self.compute_delay(retry)

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Whether a failed ``attempt`` (1-indexed) gets another try."""
        return attempt < self.attempts and is_transient(error)


def is_transient(error: BaseException) -> bool:
    """Classify an error raised by the block runtime.

    Explicitly classified block errors carry their own flag. Validation style
    errors are permanent. Anything else (network, timeout, unknown) is
    treated as transient.
    """
    if isinstance(error, BlockExecutionError):
        return error.retryable
    if isinstance(error, ValidationError):
        return False
    if isinstance(error, PERMANENT_ERRORS):
        return False
    return True


async def schedule_retry(delay_ms: float) -> None:
    """Sleep for computed backoff delay before retrying."""
    await asyncio.sleep(delay_ms / 1000)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Call ``fn`` until it succeeds or ``policy.attempts`` is exhausted.

    Only exceptions matching ``retry_on`` are retried; the last one is
    re-raised once attempts run out.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except retry_on as exc:
            if attempt >= policy.attempts:
                raise
            delay = policy.compute_delay(attempt)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            logger.warning(
                f"Attempt {attempt}/{policy.attempts} failed: {exc}; retrying in {delay:.0f}ms"
            )
            await schedule_retry(delay)
            attempt += 1
