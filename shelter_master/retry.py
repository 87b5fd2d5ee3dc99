"""
Bounded retry used by the polling scheduler and the persistence path.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry an async operation a fixed number of times with a fixed backoff.

    Only exceptions whose ``retryable`` attribute is true are retried;
    anything else (mapping and validation errors) propagates on the first try.
    """
    max_retries: int = 1
    backoff_s: float = 0.1

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not getattr(e, "retryable", False) or attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(f"{description} failed ({e}); retry {attempt}/{self.max_retries} "
                               f"in {self.backoff_s * 1000:.0f}ms")
                await asyncio.sleep(self.backoff_s)
