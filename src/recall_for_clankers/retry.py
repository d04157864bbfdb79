"""
Bounded exponential-backoff retry for provider calls.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import EmbeddingError, RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES: int = 3
DEFAULT_BASE_DELAY: float = 1.0
DEFAULT_MAX_DELAY: float = 10.0


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """Seconds to wait after failed attempt number *attempt* (1-based)."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


class RetryPolicy:
    """
    Run a fallible coroutine up to ``max_retries`` times.

    Integrity errors (see :attr:`EmbeddingError.integrity`) are raised
    straight away: repeating a call that returned inconsistent data would
    only repeat the inconsistency.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if isinstance(e, EmbeddingError) and e.integrity:
                    raise
                if attempt >= self.max_retries:
                    raise RetryExhausted(self.max_retries, e) from e
                delay = self.delay_for(attempt)
                logger.warning(
                    "Embedding attempt %d failed, retrying in %.2fs: %s",
                    attempt,
                    delay,
                    e,
                )
            await self._sleep(delay)
            attempt += 1
