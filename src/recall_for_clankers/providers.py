"""
Embedding providers: the capability contract and its concrete backends.

A provider turns text into fixed-size vectors.  Shared behaviour (result
validation, cache keys, retries) lives in free functions and in the
:class:`~recall_for_clankers.embedder.Embedder` coordinator rather than in
a base class, so each backend only deals with its own transport.

Backends
--------
``OllamaEmbeddingProvider``
    Calls a local or remote Ollama server through ``ollama.AsyncClient``.
``SentenceTransformerProvider``
    Runs a sentence-transformers model in-process through ChromaDB's
    embedding-function wrapper.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
from chromadb.utils import embedding_functions
from ollama import AsyncClient, ResponseError

from .config import Settings
from .errors import (
    BatchLengthMismatch,
    DimensionMismatch,
    ProviderUnavailable,
    RequestTimeout,
)

logger = logging.getLogger(__name__)

#: Timeout, in seconds, of the availability probe.
PROBE_TIMEOUT: float = 5.0


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Capability every embedding backend implements."""

    #: ``"<provider>:<model>"``
    name: str
    provider: str
    model: str
    dimensions: int

    async def generate_embedding(self, text: str) -> list[float]: ...

    async def generate_batch_embeddings(self, texts: list[str]) -> list[list[float]]: ...

    async def is_available(self) -> bool: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def to_vector(values: Sequence[float] | Any) -> list[float]:
    """Normalise a backend result (list, tuple, numpy array) to ``list[float]``."""
    return [float(v) for v in values]


def check_dimensions(vector: list[float], dimensions: int) -> list[float]:
    if len(vector) != dimensions:
        raise DimensionMismatch(dimensions, len(vector))
    return vector


def check_batch(texts: Sequence[str], embeddings: Sequence[Any] | None) -> list[list[float]]:
    """
    Validate a batch response and convert it to plain float lists.

    The response must hold exactly one vector per input text, in order.
    Anything else is an integrity failure; the batch is never truncated
    or padded.
    """
    received = 0 if embeddings is None else len(embeddings)
    if embeddings is None or received != len(texts):
        raise BatchLengthMismatch(len(texts), received)
    return [to_vector(e) for e in embeddings]


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OllamaModelInfo:
    dimensions: int
    context_window: int
    description: str


OLLAMA_MODELS: dict[str, OllamaModelInfo] = {
    "mxbai-embed-large": OllamaModelInfo(
        1024, 8192, "High-precision embedding model for complex conversational context"
    ),
    "nomic-embed-text": OllamaModelInfo(
        768, 8192, "Balanced performance embedding model for general-purpose use"
    ),
    "all-minilm": OllamaModelInfo(384, 512, "Lightweight embedding model for fast inference"),
}

_UNKNOWN_OLLAMA_MODEL = OllamaModelInfo(1024, 8192, "Unknown model")

_OLLAMA_ERRORS = (ResponseError, ConnectionError, httpx.HTTPError)


class OllamaEmbeddingProvider:
    """
    Embedding provider backed by an Ollama server.

    Parameters
    ----------
    model:
        Ollama model name, e.g. ``"nomic-embed-text"``.  Dimensions are
        looked up in :data:`OLLAMA_MODELS`; unknown models are assumed to
        produce 1024-dimensional vectors unless *dimensions* is given.
    host:
        Ollama server URL.
    timeout:
        Seconds allowed for a single-text request.  Batch requests get
        twice as long.
    keep_alive:
        How long Ollama keeps the model loaded after a request.
    batch_size:
        Preferred coalescing batch size for this model.
    """

    provider = "ollama"

    def __init__(
        self,
        model: str = "nomic-embed-text",
        host: str = "http://localhost:11434",
        timeout: float = 30.0,
        keep_alive: str = "5m",
        batch_size: int = 32,
        dimensions: int | None = None,
        probe_timeout: float = PROBE_TIMEOUT,
        _client: AsyncClient | None = None,
    ) -> None:
        self.model = model
        self.host = host
        self.timeout = timeout
        self.keep_alive = keep_alive
        self.batch_size = batch_size
        self.probe_timeout = probe_timeout
        self._info = OLLAMA_MODELS.get(model, _UNKNOWN_OLLAMA_MODEL)
        self.dimensions = dimensions or self._info.dimensions
        self._client = _client or AsyncClient(host=host)

    @property
    def name(self) -> str:
        return f"{self.provider}:{self.model}"

    # ------------------------------------------------------------------
    # Presets
    # ------------------------------------------------------------------

    @classmethod
    def high_precision(cls, host: str = "http://localhost:11434") -> "OllamaEmbeddingProvider":
        return cls("mxbai-embed-large", host=host, timeout=30.0, keep_alive="15m", batch_size=16)

    @classmethod
    def balanced(cls, host: str = "http://localhost:11434") -> "OllamaEmbeddingProvider":
        return cls("nomic-embed-text", host=host, timeout=20.0, keep_alive="10m", batch_size=32)

    @classmethod
    def lightweight(cls, host: str = "http://localhost:11434") -> "OllamaEmbeddingProvider":
        return cls("all-minilm", host=host, timeout=15.0, keep_alive="5m", batch_size=64)

    # ------------------------------------------------------------------
    # EmbeddingProvider
    # ------------------------------------------------------------------

    async def generate_embedding(self, text: str) -> list[float]:
        embeddings = await self._embed(text, self.timeout, self.keep_alive)
        if not embeddings:
            raise ProviderUnavailable("No embeddings returned from Ollama")
        return to_vector(embeddings[0])

    async def generate_batch_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        embeddings = await self._embed(texts, self.timeout * 2, self.keep_alive)
        return check_batch(texts, embeddings)

    async def is_available(self) -> bool:
        try:
            await asyncio.wait_for(
                self._client.embed(model=self.model, input="test"),
                timeout=self.probe_timeout,
            )
        except Exception as e:
            logger.warning("Ollama model %s not available: %s", self.model, str(e) or "timeout")
            return False
        return True

    # ------------------------------------------------------------------
    # Model management
    # ------------------------------------------------------------------

    async def pull_model(self) -> None:
        logger.info("Pulling Ollama model: %s", self.model)
        try:
            await self._client.pull(model=self.model)
        except _OLLAMA_ERRORS as e:
            raise ProviderUnavailable(f"Failed to pull model {self.model}: {e}") from e
        logger.info("Successfully pulled model: %s", self.model)

    async def get_model_info(self) -> Any:
        try:
            return await self._client.show(model=self.model)
        except _OLLAMA_ERRORS as e:
            raise ProviderUnavailable(f"Failed to get model info for {self.model}: {e}") from e

    def model_metadata(self) -> OllamaModelInfo:
        return self._info

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _embed(self, payload: str | list[str], timeout: float, keep_alive: str) -> Any:
        try:
            response = await asyncio.wait_for(
                self._client.embed(
                    model=self.model,
                    input=payload,
                    truncate=True,
                    keep_alive=keep_alive,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"Ollama request timed out after {timeout:.0f}s") from e
        except _OLLAMA_ERRORS as e:
            raise ProviderUnavailable(f"Ollama request failed: {e}") from e
        return response.embeddings


# ---------------------------------------------------------------------------
# sentence-transformers (in-process)
# ---------------------------------------------------------------------------

SENTENCE_TRANSFORMER_DIMENSIONS: dict[str, int] = {
    "all-MiniLM-L6-v2": 384,
    "all-MiniLM-L12-v2": 384,
    "all-mpnet-base-v2": 768,
    "multi-qa-MiniLM-L6-cos-v1": 384,
}


def get_embedding_function(
    model_name: str = "all-MiniLM-L6-v2",
) -> embedding_functions.SentenceTransformerEmbeddingFunction:
    """Return a sentence-transformer embedding function for ChromaDB."""
    return embedding_functions.SentenceTransformerEmbeddingFunction(
        model_name=model_name
    )


class SentenceTransformerProvider:
    """
    Local embedding provider running a sentence-transformers model.

    The model is loaded lazily by the first call, so the availability
    probe is given a longer default timeout than remote providers.
    Inference runs in a worker thread to keep the event loop free.
    """

    provider = "sentence-transformers"

    def __init__(
        self,
        model: str = "all-MiniLM-L6-v2",
        dimensions: int | None = None,
        probe_timeout: float = 60.0,
        _embedding_function: Any | None = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions or SENTENCE_TRANSFORMER_DIMENSIONS.get(model, 384)
        self.probe_timeout = probe_timeout
        self._ef = _embedding_function

    @property
    def name(self) -> str:
        return f"{self.provider}:{self.model}"

    async def generate_embedding(self, text: str) -> list[float]:
        embeddings = await self._embed([text])
        if not embeddings:
            raise ProviderUnavailable(f"No embeddings returned from {self.name}")
        return to_vector(embeddings[0])

    async def generate_batch_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return check_batch(texts, await self._embed(texts))

    async def is_available(self) -> bool:
        try:
            await asyncio.wait_for(self._embed(["test"]), timeout=self.probe_timeout)
        except Exception as e:
            logger.warning("Model %s not available: %s", self.name, str(e) or "timeout")
            return False
        return True

    async def _embed(self, texts: list[str]) -> Any:
        try:
            return await asyncio.to_thread(self._call, texts)
        except (OSError, ValueError, RuntimeError) as e:
            raise ProviderUnavailable(f"{self.name} failed: {e}") from e

    def _call(self, texts: list[str]) -> Any:
        if self._ef is None:
            self._ef = get_embedding_function(self.model)
        return self._ef(texts)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_provider(settings: Settings) -> EmbeddingProvider:
    """Build the provider named by *settings*."""
    if settings.provider == "sentence-transformers":
        return SentenceTransformerProvider(model=settings.model or "all-MiniLM-L6-v2")
    if settings.model is None:
        provider = OllamaEmbeddingProvider.balanced(settings.ollama_host)
        provider.batch_size = settings.batch_size
        provider.timeout = settings.timeout
        return provider
    return OllamaEmbeddingProvider(
        model=settings.model,
        host=settings.ollama_host,
        timeout=settings.timeout,
        batch_size=settings.batch_size,
    )
