"""Tests for MemoryManager – the main high-level API."""

from __future__ import annotations

import logging

import pytest

from conftest import FakeProvider, fast_retry
from recall_for_clankers.config import Settings
from recall_for_clankers.embedder import Embedder
from recall_for_clankers.errors import ProviderUnavailable, SemanticSearchDisabled
from recall_for_clankers.memory import MEMORY_CATEGORIES, MemoryManager
from recall_for_clankers.store import ChromaVectorStore, SQLiteVectorStore


def make_manager(tmp_path, provider: FakeProvider | None = None, **settings) -> MemoryManager:
    provider = provider or FakeProvider()
    return MemoryManager(
        Settings(db_path=str(tmp_path / "memory.db"), **settings),
        _embedder=Embedder(provider, retry=fast_retry(), debounce=0, drain_delay=0),
    )


class TestMemoryManagerRecords:
    @pytest.mark.asyncio
    async def test_store_and_get(self, memory_manager: MemoryManager):
        memory = await memory_manager.store_memory("User likes tea", "preferences", {"k": "v"})
        fetched = memory_manager.get_memory(memory.id)
        assert fetched.content == "User likes tea"
        assert fetched.metadata == {"k": "v"}
        assert memory_manager.count() == 1

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, memory_manager: MemoryManager):
        a = await memory_manager.store_memory("same", "facts")
        b = await memory_manager.store_memory("same", "facts")
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_store_embeds_record(self, memory_manager: MemoryManager, fake_provider):
        memory = await memory_manager.store_memory("Embed me", "facts")
        similar = await memory_manager.semantic_search("Embed me", min_similarity=0.99)
        assert [r.memory.id for r in similar] == [memory.id]
        assert ["Embed me"] in fake_provider.batch_calls

    @pytest.mark.asyncio
    async def test_store_survives_embedding_failure(self, memory_manager, fake_provider, caplog):
        fake_provider.failures = [ProviderUnavailable("down")] * 3
        with caplog.at_level(logging.WARNING):
            memory = await memory_manager.store_memory("Still stored", "facts")
        assert memory_manager.get_memory(memory.id) is not None
        assert "Failed to generate embedding" in caplog.text

    @pytest.mark.asyncio
    async def test_update_reembeds_new_content(self, memory_manager: MemoryManager):
        memory = await memory_manager.store_memory("old words", "facts")
        updated = await memory_manager.update_memory(memory.id, content="new words")
        assert updated.content == "new words"
        results = await memory_manager.semantic_search("new words", min_similarity=0.99)
        assert [r.memory.id for r in results] == [memory.id]

    @pytest.mark.asyncio
    async def test_update_missing(self, memory_manager: MemoryManager):
        assert await memory_manager.update_memory("missing", content="x") is None

    @pytest.mark.asyncio
    async def test_delete(self, memory_manager: MemoryManager):
        memory = await memory_manager.store_memory("bye", "facts")
        assert memory_manager.delete_memory(memory.id) is True
        assert memory_manager.get_memory(memory.id) is None
        assert memory_manager.delete_memory(memory.id) is False

    @pytest.mark.asyncio
    async def test_listing_and_stats(self, memory_manager: MemoryManager):
        await memory_manager.store_memory("a", "facts")
        await memory_manager.store_memory("b", "goals")
        await memory_manager.store_memory("c", "goals")
        assert memory_manager.get_categories() == ["facts", "goals"]
        assert memory_manager.get_memory_stats() == {"facts": 1, "goals": 2}
        assert len(memory_manager.get_memories_by_category("goals")) == 2
        assert len(memory_manager.get_recent_memories(2)) == 2

    @pytest.mark.asyncio
    async def test_keyword_search(self, memory_manager: MemoryManager):
        await memory_manager.store_memory("The project deadline is Friday", "projects")
        await memory_manager.store_memory("Buy milk", "reminders")
        results = memory_manager.search_memories("deadline")
        assert [m.content for m in results] == ["The project deadline is Friday"]
        assert memory_manager.search_memories("deadline", category="reminders") == []

    def test_categories_constant(self):
        assert "preferences" in MEMORY_CATEGORIES
        assert len(MEMORY_CATEGORIES) == 8


class TestMemoryManagerSemantic:
    @pytest.mark.asyncio
    async def test_provider_info(self, memory_manager: MemoryManager):
        assert memory_manager.is_semantic_search_enabled()
        assert memory_manager.get_provider_info() == {"name": "fake:md5", "dimensions": 16}

    @pytest.mark.asyncio
    async def test_hybrid_search(self, memory_manager: MemoryManager):
        memory = await memory_manager.store_memory("green tea with honey", "preferences")
        results = await memory_manager.hybrid_search("green tea with honey")
        assert results[0].memory.id == memory.id
        assert results[0].text_score == 1.0

    @pytest.mark.asyncio
    async def test_find_similar_and_cluster(self, memory_manager: MemoryManager, fake_provider):
        vec = [1.0] + [0.0] * 15
        fake_provider.vectors["first twin"] = vec
        fake_provider.vectors["second twin"] = vec
        first = await memory_manager.store_memory("first twin", "facts")
        second = await memory_manager.store_memory("second twin", "facts")

        similar = await memory_manager.find_similar_memories(first.id)
        assert [r.memory.id for r in similar] == [second.id]

        clusters = await memory_manager.cluster_memories()
        assert clusters[0].memory_ids == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_initialize_backfills_existing_records(self, tmp_path):
        provider = FakeProvider()
        offline = make_manager(tmp_path, provider, enable_embeddings=False)
        await offline.initialize()
        for i in range(3):
            await offline.store_memory(f"note {i}", "facts")
        offline.close()

        manager = make_manager(tmp_path, provider)
        await manager.initialize()
        stats = manager.get_embedding_statistics()
        assert stats["total_embeddings"] == 3
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_generate_missing_embeddings(self, memory_manager: MemoryManager, fake_provider):
        memory = await memory_manager.store_memory("will lose its vector", "facts")
        memory_manager._vectors.delete_embeddings(memory.id)
        assert await memory_manager.generate_missing_embeddings() == 1
        assert await memory_manager.generate_missing_embeddings() == 0


class TestMemoryManagerWithoutEmbeddings:
    @pytest.mark.asyncio
    async def test_unavailable_provider_disables_semantic_search(self, tmp_path):
        provider = FakeProvider()
        provider.available = False
        manager = make_manager(tmp_path, provider)
        await manager.initialize()

        assert not manager.is_semantic_search_enabled()
        assert manager.get_provider_info() is None
        assert manager.get_embedding_statistics() is None
        with pytest.raises(SemanticSearchDisabled):
            await manager.semantic_search("anything")
        with pytest.raises(SemanticSearchDisabled):
            await manager.find_similar_memories("id")
        with pytest.raises(SemanticSearchDisabled):
            await manager.cluster_memories()
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_store_does_not_call_provider(self, tmp_path):
        provider = FakeProvider()
        manager = make_manager(tmp_path, provider, enable_embeddings=False)
        await manager.initialize()
        await manager.store_memory("plain record", "facts")
        assert provider.batch_calls == []
        assert provider.single_calls == []
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_hybrid_falls_back_to_keyword_results(self, tmp_path):
        manager = make_manager(tmp_path, enable_embeddings=False)
        await manager.initialize()
        memory = await manager.store_memory("keyword fallback works", "facts")

        results = await manager.hybrid_search("fallback")

        assert len(results) == 1
        assert results[0].memory.id == memory.id
        assert results[0].similarity == 0.0
        assert results[0].text_score == 1.0
        assert results[0].combined_score == 1.0
        await manager.aclose()


class TestVectorBackendSelection:
    def test_sqlite_is_default(self, tmp_path):
        manager = make_manager(tmp_path)
        assert isinstance(manager._vectors, SQLiteVectorStore)
        manager.close()

    def test_chroma_backend(self, tmp_path):
        manager = make_manager(tmp_path, vector_backend="chroma", chroma_path=str(tmp_path / "chroma"))
        assert isinstance(manager._vectors, ChromaVectorStore)
        manager.close()

    def test_unknown_backend_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            Settings(vector_backend="faiss")
