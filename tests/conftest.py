"""
Shared pytest fixtures for recall-for-clankers tests.

Uses a deterministic fake embedding provider, SQLite databases under
``tmp_path`` and ChromaDB in ephemeral (in-memory) mode, so tests run
fast without an Ollama server or any ML model download.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid

import chromadb
import pytest
import pytest_asyncio

from recall_for_clankers.config import Settings
from recall_for_clankers.database import MemoryDatabase
from recall_for_clankers.embedder import Embedder
from recall_for_clankers.memory import MemoryManager
from recall_for_clankers.retry import RetryPolicy
from recall_for_clankers.similarity import SimilarityEngine
from recall_for_clankers.store import ChromaVectorStore, SQLiteVectorStore


def md5_vector(text: str, dimensions: int = 16) -> list[float]:
    """Unit vector derived from the MD5 digest of *text*."""
    digest = hashlib.md5(text.encode()).digest()
    vec = [(digest[i % len(digest)] - 128) / 128.0 for i in range(dimensions)]
    norm = sum(x * x for x in vec) ** 0.5 or 1.0
    return [x / norm for x in vec]


class FakeProvider:
    """
    Deterministic embedding provider for tests.

    Vectors come from :func:`md5_vector` unless overridden in ``vectors``.
    Every call is recorded.  Exceptions queued in ``failures`` are raised
    by the next calls, one per call.  ``drop_last`` makes batch calls
    return one vector too few.  ``probe_delay`` makes the availability probe
    suspend for that many seconds.
    """

    provider = "fake"

    def __init__(self, model: str = "md5", dimensions: int = 16, batch_size: int = 32) -> None:
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.available = True
        self.probe_delay = 0.0
        self.vectors: dict[str, list[float]] = {}
        self.failures: list[Exception] = []
        self.drop_last = False
        self.single_calls: list[str] = []
        self.batch_calls: list[list[str]] = []

    @property
    def name(self) -> str:
        return f"{self.provider}:{self.model}"

    def vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return self.vectors[text]
        return md5_vector(text, self.dimensions)

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    async def generate_embedding(self, text: str) -> list[float]:
        self.single_calls.append(text)
        self._maybe_fail()
        return self.vector_for(text)

    async def generate_batch_embeddings(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls.append(list(texts))
        self._maybe_fail()
        vectors = [self.vector_for(text) for text in texts]
        if self.drop_last and vectors:
            vectors = vectors[:-1]
        return vectors

    async def is_available(self) -> bool:
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        return self.available


class FakeEmbeddingFunction:
    """
    Deterministic ChromaDB-style embedding function that maps text to a
    unit vector derived from its MD5 hash.  Fast and reproducible, no
    model download.
    """

    def name(self) -> str:
        return "fake-md5-embedding"

    def __call__(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return [md5_vector(text) for text in input]


async def no_sleep(_: float) -> None:
    return None


def fast_retry(max_retries: int = 3) -> RetryPolicy:
    return RetryPolicy(max_retries=max_retries, base_delay=0.0, sleep=no_sleep)


# A single shared EphemeralClient instance for the test session.
# Each fixture call uses a uniquely named namespace so tests are isolated.
_EPHEMERAL_CLIENT = chromadb.EphemeralClient()


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def embedder(fake_provider: FakeProvider) -> Embedder:
    return Embedder(fake_provider, retry=fast_retry(), debounce=0, drain_delay=0)


@pytest.fixture()
def db(tmp_path) -> MemoryDatabase:
    database = MemoryDatabase(tmp_path / "memory.db")
    yield database
    database.close()


@pytest.fixture()
def sqlite_vectors(db: MemoryDatabase) -> SQLiteVectorStore:
    return SQLiteVectorStore(db)


@pytest.fixture()
def chroma_vectors(db: MemoryDatabase) -> ChromaVectorStore:
    """Chroma-backed store on the shared EphemeralClient with its own namespace."""
    return ChromaVectorStore(
        namespace=f"t{uuid.uuid4().hex[:12]}",
        records=db,
        _client=_EPHEMERAL_CLIENT,
    )


@pytest.fixture()
def engine(db: MemoryDatabase, sqlite_vectors: SQLiteVectorStore, embedder: Embedder) -> SimilarityEngine:
    return SimilarityEngine(db, sqlite_vectors, embedder)


@pytest_asyncio.fixture()
async def memory_manager(tmp_path, fake_provider: FakeProvider) -> MemoryManager:
    """Initialised MemoryManager wired to the fake provider and a temp database."""
    settings = Settings(db_path=str(tmp_path / "manager.db"))
    manager = MemoryManager(
        settings,
        _embedder=Embedder(fake_provider, retry=fast_retry(), debounce=0, drain_delay=0),
    )
    await manager.initialize()
    yield manager
    await manager.aclose()
