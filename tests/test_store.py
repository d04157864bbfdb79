"""Tests for the SQLite and ChromaDB vector stores."""

from __future__ import annotations

import pytest

from conftest import md5_vector
from recall_for_clankers.database import MemoryDatabase
from recall_for_clankers.errors import DimensionMismatch, VectorFormatError
from recall_for_clankers.store import ChromaVectorStore, VectorStore


@pytest.fixture(params=["sqlite", "chroma"])
def vectors(request, db: MemoryDatabase) -> VectorStore:
    return request.getfixturevalue(f"{request.param}_vectors")


def add_record(db: MemoryDatabase, memory_id: str, category: str = "facts") -> None:
    db.create_memory(memory_id, f"content of {memory_id}", category)


class TestVectorStoreContract:
    def test_satisfies_protocol(self, vectors):
        assert isinstance(vectors, VectorStore)

    def test_store_and_get(self, vectors, db):
        add_record(db, "m1")
        vector = md5_vector("m1")
        vectors.store_embedding("m1", vector, "fake", "md5", 16)
        assert vectors.get_embedding("m1", "fake", "md5") == pytest.approx(vector, rel=1e-6)

    def test_missing_vector(self, vectors):
        assert vectors.get_embedding("nope", "fake", "md5") is None

    def test_store_replaces_existing(self, vectors, db):
        add_record(db, "m1")
        vectors.store_embedding("m1", md5_vector("old"), "fake", "md5", 16)
        vectors.store_embedding("m1", md5_vector("new"), "fake", "md5", 16)
        assert vectors.get_embedding("m1", "fake", "md5") == pytest.approx(md5_vector("new"), rel=1e-6)
        assert len(vectors.get_all_embeddings_for("fake", "md5")) == 1

    def test_models_coexist(self, vectors, db):
        add_record(db, "m1")
        vectors.store_embedding("m1", md5_vector("a", 16), "fake", "small", 16)
        vectors.store_embedding("m1", md5_vector("a", 32), "fake", "large", 32)
        assert len(vectors.get_embedding("m1", "fake", "small")) == 16
        assert len(vectors.get_embedding("m1", "fake", "large")) == 32

    def test_wrong_dimensions_rejected(self, vectors, db):
        add_record(db, "m1")
        with pytest.raises(DimensionMismatch):
            vectors.store_embedding("m1", [1.0, 2.0], "fake", "md5", 16)

    def test_get_all_filters_by_category(self, vectors, db):
        add_record(db, "a", "facts")
        add_record(db, "b", "goals")
        for memory_id in ("a", "b"):
            vectors.store_embedding(memory_id, md5_vector(memory_id), "fake", "md5", 16)
        assert {mid for mid, _ in vectors.get_all_embeddings_for("fake", "md5")} == {"a", "b"}
        assert [mid for mid, _ in vectors.get_all_embeddings_for("fake", "md5", "goals")] == ["b"]

    def test_delete_embeddings(self, vectors, db):
        add_record(db, "m1")
        vectors.store_embedding("m1", md5_vector("m1"), "fake", "md5", 16)
        vectors.delete_embeddings("m1")
        assert vectors.get_embedding("m1", "fake", "md5") is None

    def test_stats_grouped_by_provider(self, vectors, db):
        for memory_id in ("a", "b"):
            add_record(db, memory_id)
            vectors.store_embedding(memory_id, md5_vector(memory_id), "fake", "md5", 16)
        vectors.store_embedding("a", md5_vector("a", 8), "other", "tiny", 8)
        stats = vectors.get_embedding_stats()
        assert stats["fake"] == {"count": 2, "models": ["md5"]}
        assert stats["other"] == {"count": 1, "models": ["tiny"]}


class TestSQLiteVectorStore:
    def test_storage_order_is_insertion_order(self, sqlite_vectors, db):
        for memory_id in ("c", "a", "b"):
            add_record(db, memory_id)
            sqlite_vectors.store_embedding(memory_id, md5_vector(memory_id), "fake", "md5", 16)
        assert [mid for mid, _ in sqlite_vectors.get_all_embeddings_for("fake", "md5")] == ["c", "a", "b"]

    def test_reembedded_memory_moves_to_end(self, sqlite_vectors, db):
        for memory_id in ("a", "b", "c"):
            add_record(db, memory_id)
            sqlite_vectors.store_embedding(memory_id, md5_vector(memory_id), "fake", "md5", 16)
        sqlite_vectors.store_embedding("a", md5_vector("a again"), "fake", "md5", 16)
        assert [mid for mid, _ in sqlite_vectors.get_all_embeddings_for("fake", "md5")] == ["b", "c", "a"]

    def test_deleting_record_cascades(self, sqlite_vectors, db):
        add_record(db, "m1")
        sqlite_vectors.store_embedding("m1", md5_vector("m1"), "fake", "md5", 16)
        db.delete_memory("m1")
        assert sqlite_vectors.get_embedding("m1", "fake", "md5") is None

    def test_corrupt_blob_rejected_on_read(self, sqlite_vectors, db):
        add_record(db, "m1")
        sqlite_vectors.store_embedding("m1", md5_vector("m1"), "fake", "md5", 16)
        with db.connection:
            db.connection.execute(
                "UPDATE memory_embeddings SET embedding = ? WHERE memory_id = ?",
                (b"\x00" * 10, "m1"),
            )
        with pytest.raises(VectorFormatError):
            sqlite_vectors.get_embedding("m1", "fake", "md5")


class TestChromaVectorStore:
    def test_collection_name_is_valid_and_stable(self, chroma_vectors):
        name = chroma_vectors.collection_name("ollama", "nomic-embed-text:latest")
        assert name == chroma_vectors.collection_name("ollama", "nomic-embed-text:latest")
        assert name.startswith(chroma_vectors.namespace + "-")
        assert len(name) <= 63
        assert ":" not in name

    def test_category_filter_requires_records(self, chroma_vectors):
        store = ChromaVectorStore(namespace=chroma_vectors.namespace, _client=chroma_vectors.client)
        store.store_embedding("m1", md5_vector("m1"), "fake", "md5", 16)
        with pytest.raises(ValueError):
            store.get_all_embeddings_for("fake", "md5", "facts")

    def test_namespaces_are_isolated(self, chroma_vectors, db):
        other = ChromaVectorStore(namespace=chroma_vectors.namespace + "x", _client=chroma_vectors.client)
        add_record(db, "m1")
        chroma_vectors.store_embedding("m1", md5_vector("m1"), "fake", "md5", 16)
        assert other.get_embedding("m1", "fake", "md5") is None
        assert other.get_embedding_stats() == {}

    def test_reembedding_upserts_in_place(self, chroma_vectors, db):
        for memory_id in ("a", "b", "c"):
            add_record(db, memory_id)
            chroma_vectors.store_embedding(memory_id, md5_vector(memory_id), "fake", "md5", 16)
        chroma_vectors.store_embedding("a", md5_vector("a again"), "fake", "md5", 16)

        listed = dict(chroma_vectors.get_all_embeddings_for("fake", "md5"))
        assert sorted(listed) == ["a", "b", "c"]
        assert listed["a"] == pytest.approx(md5_vector("a again"), rel=1e-6)
