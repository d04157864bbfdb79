"""
MemoryManager: high-level API for storing and retrieving memories.

This is the main entry-point for applications that want to persist
context across LLM sessions or compactions.  Records always go to the
SQLite database; when an embedding provider answers the startup probe
the manager also keeps a vector per record and unlocks semantic search.

Usage example::

    import asyncio
    from recall_for_clankers import MemoryManager, Settings

    async def main():
        memory = MemoryManager(Settings(db_path="./memory.db"))
        await memory.initialize()

        await memory.store_memory("The user's name is Alice and she prefers Python.", "facts")

        for r in await memory.hybrid_search("What language does the user prefer?"):
            print(r.memory.content, r.combined_score)

        await memory.aclose()

    asyncio.run(main())
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .cache import EmbeddingCache
from .config import Settings
from .database import Memory, MemoryDatabase
from .embedder import Embedder
from .errors import EmbeddingError, SemanticSearchDisabled
from .providers import EmbeddingProvider, create_provider
from .retry import RetryPolicy
from .similarity import Cluster, SearchResult, SimilarityEngine
from .store import ChromaVectorStore, SQLiteVectorStore, VectorStore

logger = logging.getLogger(__name__)

#: Suggested categories for organising memories.  Not enforced.
MEMORY_CATEGORIES = (
    "facts",
    "preferences",
    "conversations",
    "projects",
    "learning",
    "goals",
    "context",
    "reminders",
)

#: Records checked for missing vectors during ``initialize``.
STARTUP_BACKFILL_LIMIT = 1000

#: Records checked by ``generate_missing_embeddings``.
MANUAL_BACKFILL_LIMIT = 10000


class MemoryManager:
    """
    Record service with optional semantic search.

    Responsibilities
    ----------------
    * **Store** - Writes records to the database and, when semantic search
      is enabled, embeds them.  An embedding failure is logged and never
      fails the write.
    * **Retrieve** - Keyword search, semantic search, hybrid search,
      nearest neighbours and clustering.
    * **Manage** - Update, delete, list by category or recency, and
      statistics.

    Parameters
    ----------
    settings:
        Runtime configuration.  Defaults to :class:`Settings` defaults.
    _db, _provider, _vectors, _embedder:
        Pre-built collaborators, used by tests.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        _db: MemoryDatabase | None = None,
        _provider: EmbeddingProvider | None = None,
        _vectors: VectorStore | None = None,
        _embedder: Embedder | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._db = _db or MemoryDatabase(self.settings.db_path)
        self._vectors = _vectors or self._create_vector_store()
        self._provider = _provider
        self._embedder = _embedder
        self._engine: SimilarityEngine | None = None
        self._initialized = False

    def _create_vector_store(self) -> VectorStore:
        if self.settings.vector_backend == "chroma":
            return ChromaVectorStore(path=self.settings.chroma_path, records=self._db)
        return SQLiteVectorStore(self._db)

    def _create_embedder(self) -> Embedder:
        provider = self._provider or create_provider(self.settings)
        return Embedder(
            provider,
            cache=EmbeddingCache(self.settings.cache_size, self.settings.cache_ttl),
            retry=RetryPolicy(max_retries=self.settings.max_retries),
            batch_size=self.settings.batch_size,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Probe the embedding provider and enable semantic search if it answers.

        On success, records among the most recent
        :data:`STARTUP_BACKFILL_LIMIT` that lack a vector are embedded.
        Calling this more than once has no further effect.
        """
        if self._initialized:
            return
        self._initialized = True

        if not self.settings.enable_embeddings:
            logger.info("Embeddings disabled, semantic search off")
            return

        embedder = self._embedder or self._create_embedder()
        if not await embedder.is_available():
            logger.warning("Embedding provider %s not available, semantic search disabled", embedder.name)
            await embedder.aclose()
            self._embedder = None
            return

        self._embedder = embedder
        self._engine = SimilarityEngine(self._db, self._vectors, embedder)
        logger.info("Semantic search initialized with %s", embedder.name)

        try:
            await self._engine.ensure_embeddings_exist(
                self._db.get_recent_memories(STARTUP_BACKFILL_LIMIT),
                batch_size=self.settings.batch_size,
            )
        except EmbeddingError as e:
            logger.error("Failed to generate missing embeddings: %s", e)

    def close(self) -> None:
        self._db.close()

    async def aclose(self) -> None:
        if self._embedder is not None:
            await self._embedder.aclose()
        self.close()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def store_memory(
        self,
        content: str,
        category: str,
        metadata: dict[str, Any] | None = None,
        relevance_score: float = 1.0,
    ) -> Memory:
        """Store a new record and, if possible, its vector."""
        memory = self._db.create_memory(
            str(uuid.uuid4()), content, category, metadata or {}, relevance_score
        )
        if self._engine is not None:
            try:
                await self._engine.generate_and_store_embedding(memory)
            except EmbeddingError as e:
                logger.warning("Failed to generate embedding for new memory %s: %s", memory.id, e)
        return memory

    def get_memory(self, memory_id: str) -> Memory | None:
        return self._db.get_memory(memory_id)

    async def update_memory(
        self,
        memory_id: str,
        content: str | None = None,
        category: str | None = None,
        metadata: dict[str, Any] | None = None,
        relevance_score: float | None = None,
    ) -> Memory | None:
        """Apply changes to a record; a new *content* is re-embedded."""
        memory = self._db.update_memory(memory_id, content, category, metadata, relevance_score)
        if memory is None:
            return None
        if content is not None and self._engine is not None:
            try:
                await self._engine.generate_and_store_embedding(memory)
            except EmbeddingError as e:
                logger.warning("Failed to regenerate embedding for updated memory %s: %s", memory_id, e)
        return memory

    def delete_memory(self, memory_id: str) -> bool:
        deleted = self._db.delete_memory(memory_id)
        # The chroma backend has no cascade from the records table.
        self._vectors.delete_embeddings(memory_id)
        return deleted

    def search_memories(self, query: str, category: str | None = None, limit: int = 10) -> list[Memory]:
        """Keyword search, best match first."""
        return self._db.search_memories(query, limit, category=category)

    def get_memories_by_category(self, category: str, limit: int = 10) -> list[Memory]:
        return self._db.get_memories_by_category(category, limit)

    def get_recent_memories(self, limit: int = 10) -> list[Memory]:
        return self._db.get_recent_memories(limit)

    def get_categories(self) -> list[str]:
        return self._db.get_categories()

    def get_memory_stats(self) -> dict[str, int]:
        return self._db.get_memory_stats()

    def count(self) -> int:
        return self._db.count()

    # ------------------------------------------------------------------
    # Semantic search
    # ------------------------------------------------------------------

    def is_semantic_search_enabled(self) -> bool:
        return self._engine is not None

    def get_provider_info(self) -> dict[str, Any] | None:
        if self._engine is None or self._embedder is None:
            return None
        return {"name": self._embedder.name, "dimensions": self._embedder.dimensions}

    def _require_engine(self) -> SimilarityEngine:
        if self._engine is None:
            raise SemanticSearchDisabled()
        return self._engine

    async def semantic_search(
        self,
        query: str,
        limit: int = 10,
        min_similarity: float = 0.7,
        category: str | None = None,
    ) -> list[SearchResult]:
        return await self._require_engine().semantic_search(
            query, limit=limit, min_similarity=min_similarity, category=category
        )

    async def hybrid_search(
        self,
        query: str,
        limit: int = 10,
        min_similarity: float = 0.5,
        category: str | None = None,
        text_weight: float = 0.3,
        semantic_weight: float = 0.7,
        boost_recent: bool = True,
    ) -> list[SearchResult]:
        """
        Hybrid search, or plain keyword search when semantic search is off.

        Keyword-only results carry similarity 0 and text and combined
        scores of 1.
        """
        if self._engine is None:
            return [
                SearchResult(memory=memory, similarity=0.0, combined_score=1.0, text_score=1.0)
                for memory in self.search_memories(query, category=category, limit=limit)
            ]
        return await self._engine.hybrid_search(
            query,
            limit=limit,
            min_similarity=min_similarity,
            category=category,
            text_weight=text_weight,
            semantic_weight=semantic_weight,
            boost_recent=boost_recent,
        )

    async def find_similar_memories(
        self,
        memory_id: str,
        limit: int = 5,
        min_similarity: float = 0.7,
        category: str | None = None,
    ) -> list[SearchResult]:
        return await self._require_engine().find_similar_to_memory(
            memory_id, limit=limit, min_similarity=min_similarity, category=category
        )

    async def cluster_memories(self, threshold: float = 0.8, min_cluster_size: int = 2) -> list[Cluster]:
        return await self._require_engine().cluster_memories(threshold, min_cluster_size)

    async def generate_and_store_embedding(self, memory: Memory) -> list[float]:
        return await self._require_engine().generate_and_store_embedding(memory)

    async def generate_missing_embeddings(self, limit: int = MANUAL_BACKFILL_LIMIT) -> int:
        """Embed recent records that have no vector yet; returns how many were stored."""
        engine = self._require_engine()
        return await engine.ensure_embeddings_exist(
            self._db.get_recent_memories(limit), batch_size=self.settings.batch_size
        )

    def get_embedding_statistics(self) -> dict[str, Any] | None:
        if self._engine is None:
            return None
        return self._engine.get_embedding_statistics()
