"""
Similarity ranking over stored embeddings.

``SimilarityEngine`` answers four kinds of question against the vectors of
the active (provider, model) pair:

* **semantic search** - which memories are closest to a query text;
* **hybrid search** - semantic closeness blended with keyword rank and an
  optional recency boost;
* **nearest neighbours** - which memories are closest to an existing one;
* **clustering** - greedy single-pass grouping of mutually close memories.

It also fills in missing vectors (``ensure_embeddings_exist``).
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .database import Memory, MemoryDatabase
from .embedder import Embedder
from .errors import DimensionMismatch, EmbeddingError, EmbeddingNotFound
from .store import VectorStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 60 * 60 * 24

#: Recency boost fades to zero over this many days.
RECENCY_WINDOW_DAYS = 30.0

#: Maximum boost added to the combined score of a just-updated memory.
RECENCY_BOOST = 0.1

#: Hybrid results at or below this combined score are dropped.
MIN_COMBINED_SCORE = 0.1


# ---------------------------------------------------------------------------
# Cosine similarity
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors, in [-1, 1].

    Returns 0.0 when either vector has zero length (the similarity is
    undefined there).
    """
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise DimensionMismatch(va.size, vb.size)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


def cosine_similarities(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Cosine similarity of *query* against every row of *vectors*."""
    if len(vectors) == 0:
        return np.zeros(0)
    q = np.asarray(query, dtype=float)
    matrix = np.asarray(vectors, dtype=float)
    if matrix.ndim != 2 or matrix.shape[1] != q.shape[0]:
        raise DimensionMismatch(q.shape[0], matrix.shape[-1])
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / np.where(norms > 0, norms, 1.0), 0.0)
    return np.clip(sims, -1.0, 1.0)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class SearchResult:
    memory: Memory
    similarity: float
    combined_score: float
    text_score: float | None = None
    embedding: list[float] = field(default_factory=list)

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.memory.id,
            "content": self.memory.content,
            "category": self.memory.category,
            "updated_at": self.memory.updated_at,
            "similarity": self.similarity,
            "combined_score": self.combined_score,
        }
        if self.text_score is not None:
            data["text_score"] = self.text_score
        if include_embedding and self.embedding:
            data["embedding"] = self.embedding
        return data


@dataclass
class Cluster:
    members: list[SearchResult]
    avg_similarity: float

    def __len__(self) -> int:
        return len(self.members)

    @property
    def memory_ids(self) -> list[str]:
        return [member.memory.id for member in self.members]

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": len(self.members),
            "avg_similarity": self.avg_similarity,
            "members": [member.to_dict() for member in self.members],
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SimilarityEngine:
    """
    Rank stored vectors of the embedder's (provider, model) pair.

    Parameters
    ----------
    records:
        Record database; resolves memory ids and answers keyword searches.
    vectors:
        Where embeddings are persisted.
    embedder:
        Shared coordinator used to embed queries and records.
    clock:
        Wall-clock source for the recency boost.
    """

    def __init__(
        self,
        records: MemoryDatabase,
        vectors: VectorStore,
        embedder: Embedder,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.records = records
        self.vectors = vectors
        self.embedder = embedder
        self._clock = clock

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def semantic_search(
        self,
        query: str,
        limit: int = 10,
        min_similarity: float = 0.7,
        category: str | None = None,
        include_embeddings: bool = False,
    ) -> list[SearchResult]:
        """Memories whose vectors are closest to *query*, best first."""
        query_vector = await self.embedder.embed(query)
        candidates = self._candidates(category)
        return self._rank(query_vector, candidates, limit, min_similarity, include_embeddings)

    async def hybrid_search(
        self,
        query: str,
        limit: int = 10,
        min_similarity: float = 0.5,
        category: str | None = None,
        text_weight: float = 0.3,
        semantic_weight: float = 0.7,
        boost_recent: bool = True,
        include_embeddings: bool = False,
    ) -> list[SearchResult]:
        """
        Blend semantic similarity with keyword rank.

        A wider candidate pool (``limit * 2``, threshold lowered to 80 %)
        is drawn from both sources.  Keyword rank *i* of *N* scores
        ``(N - i) / N``.  Each candidate's combined score is the weighted
        sum of both scores plus, when *boost_recent* is set, up to 0.1 for
        memories updated within the last 30 days.
        """
        semantic = await self.semantic_search(
            query,
            limit=limit * 2,
            min_similarity=min_similarity * 0.8,
            category=category,
            include_embeddings=include_embeddings,
        )
        lexical = self.records.search_memories(query, limit * 2, category=category)

        semantic_by_id = {result.memory.id: result for result in semantic}
        text_scores: dict[str, float] = {}
        total = len(lexical)
        for index, memory in enumerate(lexical):
            text_scores.setdefault(memory.id, max(0.0, (total - index) / total))

        memories: dict[str, Memory] = {}
        for result in semantic:
            memories.setdefault(result.memory.id, result.memory)
        for memory in lexical:
            memories.setdefault(memory.id, memory)

        now = self._clock()
        results: list[SearchResult] = []
        for memory_id, memory in memories.items():
            hit = semantic_by_id.get(memory_id)
            semantic_score = hit.similarity if hit else 0.0
            text_score = text_scores.get(memory_id, 0.0)

            combined = semantic_score * semantic_weight + text_score * text_weight
            if boost_recent:
                days = (now - memory.updated_at) / SECONDS_PER_DAY
                combined += max(0.0, 1 - days / RECENCY_WINDOW_DAYS) * RECENCY_BOOST

            if combined <= MIN_COMBINED_SCORE:
                continue
            results.append(
                SearchResult(
                    memory=memory,
                    similarity=semantic_score,
                    combined_score=combined,
                    text_score=text_score,
                    embedding=hit.embedding if hit and include_embeddings else [],
                )
            )

        results.sort(key=lambda r: r.combined_score, reverse=True)
        return results[:limit]

    async def find_similar_to_memory(
        self,
        memory_id: str,
        limit: int = 5,
        min_similarity: float = 0.7,
        category: str | None = None,
        include_embeddings: bool = False,
    ) -> list[SearchResult]:
        """Nearest neighbours of an existing memory, excluding itself."""
        source = self.vectors.get_embedding(
            memory_id, self.embedder.provider_name, self.embedder.model
        )
        if source is None:
            raise EmbeddingNotFound(memory_id)
        candidates = self._candidates(category, exclude=memory_id)
        return self._rank(source, candidates, limit, min_similarity, include_embeddings)

    async def cluster_memories(
        self,
        threshold: float = 0.8,
        min_cluster_size: int = 2,
    ) -> list[Cluster]:
        """
        Greedy single-pass clustering in storage order.

        Each unprocessed memory seeds a cluster and pulls in every other
        unprocessed memory at least *threshold* similar to the seed.  There
        is no transitive merging, so the result depends on storage order.
        Clusters smaller than *min_cluster_size* are discarded but their
        seed stays processed.
        """
        items = self._candidates(None)
        if not items:
            return []
        matrix = [vector for _, vector in items]

        clusters: list[Cluster] = []
        processed: set[str] = set()

        for memory, vector in items:
            if memory.id in processed:
                continue

            members = [SearchResult(memory=memory, similarity=1.0, combined_score=1.0, embedding=vector)]
            total_similarity = 1.0
            sims = cosine_similarities(vector, matrix)

            for index, (other, other_vector) in enumerate(items):
                if other.id == memory.id or other.id in processed:
                    continue
                sim = float(sims[index])
                if sim >= threshold:
                    members.append(
                        SearchResult(memory=other, similarity=sim, combined_score=sim, embedding=other_vector)
                    )
                    total_similarity += sim
                    processed.add(other.id)

            if len(members) >= min_cluster_size:
                clusters.append(Cluster(members, total_similarity / len(members)))

            processed.add(memory.id)

        clusters.sort(key=lambda c: c.avg_similarity, reverse=True)
        return clusters

    # ------------------------------------------------------------------
    # Embedding generation
    # ------------------------------------------------------------------

    async def generate_and_store_embedding(self, memory: Memory) -> list[float]:
        vector = await self.embedder.embed(memory.content)
        self.vectors.store_embedding(
            memory.id,
            vector,
            self.embedder.provider_name,
            self.embedder.model,
            self.embedder.dimensions,
        )
        return vector

    async def ensure_embeddings_exist(self, memories: Sequence[Memory], batch_size: int = 32) -> int:
        """
        Generate vectors for every memory in *memories* that lacks one.

        Texts are sent in direct batch calls of *batch_size*.  When a batch
        fails, its memories are retried one by one; memories that still
        fail are logged and skipped.  Returns the number of vectors stored.
        """
        missing = [
            memory
            for memory in memories
            if self.vectors.get_embedding(memory.id, self.embedder.provider_name, self.embedder.model)
            is None
        ]
        if not missing:
            return 0

        logger.info("Generating %d missing embeddings...", len(missing))
        batches = math.ceil(len(missing) / batch_size)
        stored = 0

        for number, start in enumerate(range(0, len(missing), batch_size), 1):
            batch = missing[start : start + batch_size]
            try:
                vectors = await self.embedder.embed_many([memory.content for memory in batch])
            except EmbeddingError as e:
                logger.error("Failed to generate batch embeddings: %s", e)
                stored += await self._store_individually(batch)
                continue

            for memory, vector in zip(batch, vectors):
                self.vectors.store_embedding(
                    memory.id,
                    vector,
                    self.embedder.provider_name,
                    self.embedder.model,
                    self.embedder.dimensions,
                )
                stored += 1
            logger.info("Generated embeddings for batch %d/%d", number, batches)

        logger.info("Completed generating %d embeddings", stored)
        return stored

    def get_embedding_statistics(self) -> dict[str, Any]:
        provider_stats = self.vectors.get_embedding_stats()
        total = sum(stats["count"] for stats in provider_stats.values())
        return {
            "total_embeddings": total,
            "provider_stats": provider_stats,
            "dimensions_distribution": {self.embedder.dimensions: total},
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _candidates(
        self,
        category: str | None,
        exclude: str | None = None,
    ) -> list[tuple[Memory, list[float]]]:
        """Stored (memory, vector) pairs in storage order."""
        pairs = self.vectors.get_all_embeddings_for(
            self.embedder.provider_name, self.embedder.model, category
        )
        memories = self.records.get_memories(memory_id for memory_id, _ in pairs)

        candidates = []
        for memory_id, vector in pairs:
            if memory_id == exclude:
                continue
            memory = memories.get(memory_id)
            # Vectors can outlive their record in stores without cascades.
            if memory is None:
                continue
            if category is not None and memory.category != category:
                continue
            candidates.append((memory, vector))
        return candidates

    def _rank(
        self,
        source: list[float],
        candidates: list[tuple[Memory, list[float]]],
        limit: int,
        min_similarity: float,
        include_embeddings: bool,
    ) -> list[SearchResult]:
        sims = cosine_similarities(source, [vector for _, vector in candidates])
        results = [
            SearchResult(
                memory=memory,
                similarity=float(sim),
                combined_score=float(sim),
                embedding=vector if include_embeddings else [],
            )
            for (memory, vector), sim in zip(candidates, sims)
            if sim >= min_similarity
        ]
        # list.sort is stable, so equal scores keep storage order.
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:limit]

    async def _store_individually(self, batch: Sequence[Memory]) -> int:
        stored = 0
        for memory in batch:
            try:
                await self.generate_and_store_embedding(memory)
            except EmbeddingError as e:
                logger.error("Failed to generate embedding for memory %s: %s", memory.id, e)
                continue
            stored += 1
        return stored
