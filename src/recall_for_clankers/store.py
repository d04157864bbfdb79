"""
Vector stores: durable storage of embeddings keyed by
(memory id, provider, model).

Two backends implement the :class:`VectorStore` protocol:

``SQLiteVectorStore``
    Keeps vectors next to the records in the SQLite database, encoded
    with :mod:`recall_for_clankers.codec`.  Rows are removed automatically
    when their memory is deleted.
``ChromaVectorStore``
    Keeps one ChromaDB collection per (provider, model) pair.
"""

from __future__ import annotations

import hashlib
import re
import time
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import chromadb

from .codec import pack_vector, unpack_vector
from .errors import DimensionMismatch, VectorFormatError

if TYPE_CHECKING:
    from .database import MemoryDatabase


@runtime_checkable
class VectorStore(Protocol):
    def store_embedding(
        self,
        memory_id: str,
        vector: list[float],
        provider: str,
        model: str,
        dimensions: int,
    ) -> None: ...

    def get_embedding(self, memory_id: str, provider: str, model: str) -> list[float] | None: ...

    def get_all_embeddings_for(
        self,
        provider: str,
        model: str,
        category: str | None = None,
    ) -> list[tuple[str, list[float]]]: ...

    def delete_embeddings(self, memory_id: str) -> None: ...

    def get_embedding_stats(self) -> dict[str, dict[str, Any]]: ...


def _check_length(vector: list[float], dimensions: int) -> None:
    if len(vector) != dimensions:
        raise DimensionMismatch(dimensions, len(vector))


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

_EMBEDDINGS_SCHEMA = """
CREATE TABLE IF NOT EXISTS memory_embeddings (
    memory_id TEXT NOT NULL,
    embedding BLOB NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    dimensions INTEGER NOT NULL,
    created_at REAL NOT NULL,
    PRIMARY KEY (memory_id, provider, model),
    FOREIGN KEY (memory_id) REFERENCES memories(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_embeddings_provider_model
    ON memory_embeddings(provider, model);
CREATE INDEX IF NOT EXISTS idx_embeddings_memory_id
    ON memory_embeddings(memory_id);
"""


class SQLiteVectorStore:
    """
    Vector storage in the ``memory_embeddings`` table of a record database.

    Writes are single ``INSERT OR REPLACE`` statements keyed by
    (memory id, provider, model), so each one replaces the previous vector
    atomically.  Listing order is storage order: a re-embedded memory
    moves to the end.
    """

    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db
        self.connection = db.connection
        self.connection.executescript(_EMBEDDINGS_SCHEMA)

    def store_embedding(
        self,
        memory_id: str,
        vector: list[float],
        provider: str,
        model: str,
        dimensions: int,
    ) -> None:
        _check_length(vector, dimensions)
        with self.connection:
            self.connection.execute(
                """
                INSERT OR REPLACE INTO memory_embeddings
                    (memory_id, embedding, provider, model, dimensions, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (memory_id, pack_vector(vector), provider, model, dimensions, time.time()),
            )

    def get_embedding(self, memory_id: str, provider: str, model: str) -> list[float] | None:
        row = self.connection.execute(
            """
            SELECT embedding, dimensions FROM memory_embeddings
            WHERE memory_id = ? AND provider = ? AND model = ?
            """,
            (memory_id, provider, model),
        ).fetchone()
        if row is None:
            return None
        return unpack_vector(row["embedding"], row["dimensions"])

    def get_all_embeddings_for(
        self,
        provider: str,
        model: str,
        category: str | None = None,
    ) -> list[tuple[str, list[float]]]:
        sql = """
            SELECT e.memory_id, e.embedding, e.dimensions
            FROM memory_embeddings e
        """
        params: list[Any] = [provider, model]
        if category is not None:
            sql += " JOIN memories m ON m.id = e.memory_id"
        sql += " WHERE e.provider = ? AND e.model = ?"
        if category is not None:
            sql += " AND m.category = ?"
            params.append(category)
        sql += " ORDER BY e.rowid"

        return [
            (row["memory_id"], unpack_vector(row["embedding"], row["dimensions"]))
            for row in self.connection.execute(sql, params)
        ]

    def delete_embeddings(self, memory_id: str) -> None:
        with self.connection:
            self.connection.execute(
                "DELETE FROM memory_embeddings WHERE memory_id = ?", (memory_id,)
            )

    def get_embedding_stats(self) -> dict[str, dict[str, Any]]:
        rows = self.connection.execute(
            """
            SELECT provider, model, COUNT(*) AS count
            FROM memory_embeddings
            GROUP BY provider, model
            ORDER BY provider, model
            """
        )
        stats: dict[str, dict[str, Any]] = {}
        for row in rows:
            entry = stats.setdefault(row["provider"], {"count": 0, "models": []})
            entry["count"] += row["count"]
            entry["models"].append(row["model"])
        return stats


# ---------------------------------------------------------------------------
# ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    Persistent vector store backed by ChromaDB.

    Each (provider, model) pair gets its own cosine-space collection whose
    ids are memory ids, so vectors of different embedding spaces never
    mix.  Collections are created without an embedding function: vectors
    always arrive precomputed.

    Listing order is whatever ChromaDB returns.  An upsert of an existing
    id keeps its position, unlike :class:`SQLiteVectorStore` where a
    re-embedded memory moves to the end, so order-sensitive results such
    as clusters can differ between the two backends.

    Parameters
    ----------
    path:
        Directory of the ChromaDB persistent store.
    namespace:
        Prefix of every collection this store owns.  Keep it short;
        ChromaDB limits collection names to 63 characters.
    records:
        Record database used to resolve category filters.
    """

    def __init__(
        self,
        path: str = "./chroma_db",
        namespace: str = "vectors",
        records: MemoryDatabase | None = None,
        _client: chromadb.ClientAPI | None = None,
    ) -> None:
        self.client = _client or chromadb.PersistentClient(path=path)
        self.namespace = namespace
        self.records = records

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def collection_name(self, provider: str, model: str) -> str:
        slug = re.sub(r"[^a-zA-Z0-9_-]+", "-", f"{provider}-{model}").strip("-_")[:24]
        digest = hashlib.sha1(f"{provider}\0{model}".encode()).hexdigest()[:8]
        return f"{self.namespace}-{slug}-{digest}"

    def _owned_names(self) -> list[str]:
        # list_collections() yields names on some chromadb releases and
        # Collection objects on others.
        names = [c if isinstance(c, str) else c.name for c in self.client.list_collections()]
        return [name for name in names if name.startswith(f"{self.namespace}-")]

    def _get(self, provider: str, model: str) -> Any | None:
        name = self.collection_name(provider, model)
        if name not in self._owned_names():
            return None
        return self.client.get_collection(name=name, embedding_function=None)

    def _get_or_create(self, provider: str, model: str, dimensions: int) -> Any:
        return self.client.get_or_create_collection(
            name=self.collection_name(provider, model),
            embedding_function=None,
            metadata={
                "hnsw:space": "cosine",
                "provider": provider,
                "model": model,
                "dimensions": dimensions,
            },
        )

    # ------------------------------------------------------------------
    # VectorStore
    # ------------------------------------------------------------------

    def store_embedding(
        self,
        memory_id: str,
        vector: list[float],
        provider: str,
        model: str,
        dimensions: int,
    ) -> None:
        _check_length(vector, dimensions)
        collection = self._get_or_create(provider, model, dimensions)
        collection.upsert(
            ids=[memory_id],
            embeddings=[[float(v) for v in vector]],
            metadatas=[{"dimensions": dimensions, "created_at": time.time()}],
        )

    def get_embedding(self, memory_id: str, provider: str, model: str) -> list[float] | None:
        collection = self._get(provider, model)
        if collection is None:
            return None
        result = collection.get(ids=[memory_id], include=["embeddings"])
        embeddings = result.get("embeddings")
        if embeddings is None or len(embeddings) == 0:
            return None
        return self._to_vector(collection, embeddings[0])

    def get_all_embeddings_for(
        self,
        provider: str,
        model: str,
        category: str | None = None,
    ) -> list[tuple[str, list[float]]]:
        collection = self._get(provider, model)
        if collection is None:
            return []
        result = collection.get(include=["embeddings"])
        ids = result.get("ids") or []
        embeddings = result.get("embeddings")
        if embeddings is None:
            embeddings = []
        pairs = [
            (memory_id, self._to_vector(collection, embedding))
            for memory_id, embedding in zip(ids, embeddings)
        ]

        if category is not None:
            if self.records is None:
                raise ValueError("Category filtering requires a record database")
            memories = self.records.get_memories(memory_id for memory_id, _ in pairs)
            pairs = [
                (memory_id, vector)
                for memory_id, vector in pairs
                if memory_id in memories and memories[memory_id].category == category
            ]
        return pairs

    def delete_embeddings(self, memory_id: str) -> None:
        for name in self._owned_names():
            self.client.get_collection(name=name, embedding_function=None).delete(ids=[memory_id])

    def get_embedding_stats(self) -> dict[str, dict[str, Any]]:
        stats: dict[str, dict[str, Any]] = {}
        for name in sorted(self._owned_names()):
            collection = self.client.get_collection(name=name, embedding_function=None)
            count = collection.count()
            if count == 0:
                continue
            meta = collection.metadata or {}
            entry = stats.setdefault(meta.get("provider", "unknown"), {"count": 0, "models": []})
            entry["count"] += count
            entry["models"].append(meta.get("model", "unknown"))
        return stats

    @staticmethod
    def _to_vector(collection: Any, embedding: Any) -> list[float]:
        vector = [float(v) for v in embedding]
        dimensions = (collection.metadata or {}).get("dimensions")
        if dimensions is not None and len(vector) != dimensions:
            raise VectorFormatError(
                f"Stored vector in {collection.name} has {len(vector)} values, "
                f"expected {dimensions}"
            )
        return vector
