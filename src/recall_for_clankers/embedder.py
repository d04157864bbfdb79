"""
Embedder: the single coordinator between callers and an embedding provider.

One ``Embedder`` is created per provider and shared by everything that
needs vectors.  It owns the embedding cache, the retry policy and the
batch coalescer, so none of that state lives at module level.
"""

from __future__ import annotations

import logging

from .batching import DEFAULT_DEBOUNCE, DEFAULT_DRAIN_DELAY, BatchCoalescer
from .cache import EmbeddingCache, cache_key
from .errors import BatchLengthMismatch
from .providers import EmbeddingProvider, check_dimensions
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class Embedder:
    """
    Cache-, retry- and batch-aware front end for an :class:`EmbeddingProvider`.

    Parameters
    ----------
    provider:
        The backend that produces vectors.
    cache:
        Embedding cache.  A default-sized one is created when omitted.
        Pass ``cache_enabled=False`` to run without caching.
    retry:
        Retry policy wrapped around every provider call.
    batch_size:
        Coalescing batch size for single-text requests.  Defaults to the
        provider's ``batch_size`` attribute, or 32.  ``1`` disables
        coalescing and sends each request on its own.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache | None = None,
        retry: RetryPolicy | None = None,
        batch_size: int | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        drain_delay: float = DEFAULT_DRAIN_DELAY,
        cache_enabled: bool = True,
    ) -> None:
        self.provider = provider
        self.cache = (cache or EmbeddingCache()) if cache_enabled else None
        self.retry = retry or RetryPolicy()
        self.batch_size = batch_size or getattr(provider, "batch_size", 32)

        self._coalescer: BatchCoalescer | None = None
        if self.batch_size > 1:
            self._coalescer = BatchCoalescer(
                provider,
                retry=self.retry,
                cache=self.cache,
                batch_size=self.batch_size,
                debounce=debounce,
                drain_delay=drain_delay,
            )

    # ------------------------------------------------------------------
    # Provider identity
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.provider.name

    @property
    def provider_name(self) -> str:
        return self.provider.provider

    @property
    def model(self) -> str:
        return self.provider.model

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    @property
    def coalescer(self) -> BatchCoalescer | None:
        return self._coalescer

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """Return the vector for *text*, from cache when possible."""
        key = cache_key(self.provider_name, self.model, text)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        if self._coalescer is not None:
            # The coalescer validates and caches the vectors it produces.
            return await self._coalescer.submit(text)

        vector = await self.retry.run(lambda: self.provider.generate_embedding(text))
        check_dimensions(vector, self.dimensions)
        if self.cache is not None:
            self.cache.set(key, vector)
        return vector

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """
        Embed *texts* with one direct batch call, bypassing the coalescer.

        Cached texts are not resent.  Raises :class:`BatchLengthMismatch`
        when the provider answers with the wrong number of vectors.
        """
        results: list[list[float] | None] = [None] * len(texts)
        missing: list[int] = []
        for i, text in enumerate(texts):
            cached = None
            if self.cache is not None:
                cached = self.cache.get(cache_key(self.provider_name, self.model, text))
            if cached is None:
                missing.append(i)
            else:
                results[i] = cached

        if missing:
            batch = [texts[i] for i in missing]
            vectors = await self.retry.run(
                lambda: self.provider.generate_batch_embeddings(batch)
            )
            if len(vectors) != len(batch):
                raise BatchLengthMismatch(len(batch), len(vectors))
            for vector in vectors:
                check_dimensions(vector, self.dimensions)
            for i, vector in zip(missing, vectors):
                results[i] = vector
                if self.cache is not None:
                    self.cache.set(cache_key(self.provider_name, self.model, texts[i]), vector)

        return [vector for vector in results if vector is not None]

    async def is_available(self) -> bool:
        return await self.provider.is_available()

    async def aclose(self) -> None:
        if self._coalescer is not None:
            await self._coalescer.aclose()
