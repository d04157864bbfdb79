"""
Coalescing of single-text embedding requests into batch provider calls.

Concurrent callers each ``await submit(text)``.  Their requests wait in a
FIFO queue for a short debounce window, then a worker task sends up to
``batch_size`` of them to the provider in one round-trip and hands every
caller the vector at its own position.  The worker keeps draining the
queue until it is empty and then goes idle; the next ``submit`` starts a
fresh worker.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .cache import EmbeddingCache, cache_key
from .errors import BatchLengthMismatch, ProviderUnavailable
from .providers import EmbeddingProvider, check_dimensions
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE: int = 32

#: Seconds to let concurrent requests accumulate before the first dispatch.
DEFAULT_DEBOUNCE: float = 0.05

#: Seconds to wait between dispatches while the queue is still non-empty.
DEFAULT_DRAIN_DELAY: float = 0.1


class CoalescerState(str, enum.Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    DISPATCHING = "dispatching"


@dataclass
class PendingRequest:
    text: str
    future: asyncio.Future[list[float]]


class BatchCoalescer:
    """
    Merge near-simultaneous ``generate_embedding`` calls into batch calls.

    Parameters
    ----------
    provider:
        Provider whose ``generate_batch_embeddings`` is called.
    retry:
        Policy wrapped around each batch call.
    cache:
        Every vector of a successful batch is stored here.  Optional.
    batch_size:
        Maximum number of requests per provider call.
    debounce:
        Seconds the worker waits before its first dispatch.
    drain_delay:
        Seconds between consecutive dispatches while requests remain.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        retry: RetryPolicy | None = None,
        cache: EmbeddingCache | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        debounce: float = DEFAULT_DEBOUNCE,
        drain_delay: float = DEFAULT_DRAIN_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.provider = provider
        self.retry = retry or RetryPolicy()
        self.cache = cache
        self.batch_size = batch_size
        self.debounce = debounce
        self.drain_delay = drain_delay
        self._sleep = sleep

        self._queue: deque[PendingRequest] = deque()
        self._in_flight: list[PendingRequest] = []
        self._worker: asyncio.Task[None] | None = None
        self._state = CoalescerState.IDLE
        self._closed = False
        self.batches_dispatched = 0

    @property
    def state(self) -> CoalescerState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, text: str) -> list[float]:
        """Queue *text* and wait for its vector."""
        if self._closed:
            raise ProviderUnavailable("Batch coalescer is closed")

        loop = asyncio.get_running_loop()
        request = PendingRequest(text, loop.create_future())
        self._queue.append(request)

        if self._worker is None or self._worker.done():
            self._state = CoalescerState.COLLECTING
            self._worker = loop.create_task(self._run())

        return await request.future

    async def aclose(self) -> None:
        """Stop the worker and reject every request that has not completed."""
        self._closed = True
        stranded = [*self._in_flight, *self._queue]
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        error = ProviderUnavailable("Batch coalescer closed before the request completed")
        for request in stranded:
            if not request.future.done():
                request.future.set_exception(error)
        self._in_flight = []
        self._queue.clear()
        self._state = CoalescerState.IDLE

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        await self._sleep(self.debounce)
        while self._queue:
            batch: list[PendingRequest] = []
            while self._queue and len(batch) < self.batch_size:
                request = self._queue.popleft()
                # Callers that were cancelled while queued are dropped.
                if not request.future.done():
                    batch.append(request)
            if not batch:
                break

            self._state = CoalescerState.DISPATCHING
            await self._dispatch(batch)

            if self._queue:
                self._state = CoalescerState.COLLECTING
                await self._sleep(self.drain_delay)
        self._state = CoalescerState.IDLE

    async def _dispatch(self, batch: list[PendingRequest]) -> None:
        texts = [request.text for request in batch]
        self._in_flight = batch
        self.batches_dispatched += 1
        try:
            vectors = await self.retry.run(
                lambda: self.provider.generate_batch_embeddings(texts)
            )
            if len(vectors) != len(batch):
                raise BatchLengthMismatch(len(batch), len(vectors))
            for vector in vectors:
                check_dimensions(vector, self.provider.dimensions)
        except Exception as e:
            logger.warning("Batch of %d embeddings failed: %s", len(batch), e)
            for request in batch:
                if not request.future.done():
                    request.future.set_exception(e)
            return
        finally:
            self._in_flight = []

        for request, vector in zip(batch, vectors):
            if self.cache is not None:
                self.cache.set(
                    cache_key(self.provider.provider, self.provider.model, request.text),
                    vector,
                )
            if not request.future.done():
                request.future.set_result(vector)
