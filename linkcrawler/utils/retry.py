"""
Bounded retry policy for establishing connections to infrastructure.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """
    Fixed-count retry with a linearly growing delay.

    The first attempt is made immediately; after the n-th failure the policy
    waits ``delay + (n - 1) * backoff`` seconds, up to ``retries`` retries.
    """
    retries: int = 4
    delay: float = 5.0
    backoff: float = 3.0

    def __post_init__(self):
        if self.retries < 0:
            raise ValueError("retries must be non-negative")
        if self.delay < 0 or self.backoff < 0:
            raise ValueError("delay and backoff must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return self.delay + (attempt - 1) * self.backoff

    async def run(self, operation: Callable[[], Awaitable[T]], description: str,
                  retry_on: Tuple[Type[BaseException], ...] = (Exception,)) -> T:
        """Run ``operation`` until it succeeds or the retries are used up."""
        logger = logging.getLogger(__name__)
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt > self.retries:
                    logger.error(f"Giving up on {description} after {attempt} attempts: {e}")
                    raise
                wait = self.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt} of {description} failed: {e}. "
                    f"Retrying in {wait:.1f}s"
                )
                await asyncio.sleep(wait)
                attempt += 1
