"""Tests for the CLI entry point."""

from __future__ import annotations

import io
import json

import pytest

import recall_for_clankers.cli as cli
from conftest import FakeProvider, fast_retry
from recall_for_clankers.cli import main
from recall_for_clankers.config import Settings
from recall_for_clankers.embedder import Embedder
from recall_for_clankers.memory import MemoryManager


@pytest.fixture(autouse=True)
def patched_manager(tmp_path, monkeypatch) -> FakeProvider:
    """
    Point the CLI at a temporary database and the fake provider instead
    of a real Ollama server.
    """
    provider = FakeProvider()
    monkeypatch.setenv("RECALL_DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("RECALL_VECTOR_BACKEND", "sqlite")
    monkeypatch.delenv("RECALL_EMBEDDINGS", raising=False)

    def _fake_make_manager(settings: Settings) -> MemoryManager:
        return MemoryManager(
            settings,
            _embedder=Embedder(provider, retry=fast_retry(), debounce=0, drain_delay=0),
        )

    monkeypatch.setattr(cli, "_make_manager", _fake_make_manager)
    return provider


def stored_id(capsys) -> str:
    return capsys.readouterr().out.split()[2]


class TestRecordCommands:
    def test_list_empty(self, capsys):
        assert main(["list"]) == 0
        assert "No memories stored" in capsys.readouterr().out

    def test_store_and_list(self, capsys):
        assert main(["store", "Something to list.", "--category", "projects"]) == 0
        capsys.readouterr()
        assert main(["list", "--json"]) == 0
        memories = json.loads(capsys.readouterr().out)
        assert memories[0]["content"] == "Something to list."
        assert memories[0]["category"] == "projects"

    def test_store_reads_stdin(self, capsys, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("from stdin\n"))
        assert main(["store"]) == 0
        memory_id = stored_id(capsys)
        main(["get", memory_id, "--json"])
        assert json.loads(capsys.readouterr().out)[0]["content"] == "from stdin"

    def test_store_missing_text_returns_error(self, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO(""))
        assert main(["store"]) == 1

    def test_store_rejects_bad_metadata(self, capsys):
        assert main(["store", "text", "--metadata", "[1, 2]"]) == 1
        assert main(["store", "text", "--metadata", "{oops"]) == 1
        assert "metadata" in capsys.readouterr().err

    def test_get_missing(self, capsys):
        assert main(["get", "nope"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_search(self, capsys):
        main(["store", "The user's favourite colour is green."])
        capsys.readouterr()
        assert main(["search", "colour"]) == 0
        assert "favourite colour" in capsys.readouterr().out

    def test_update(self, capsys):
        main(["store", "first draft", "-c", "projects"])
        memory_id = stored_id(capsys)
        assert main(["update", memory_id, "--content", "final text", "-c", "goals", "--relevance", "0.4"]) == 0
        assert capsys.readouterr().out == f"Updated memory {memory_id}.\n"
        main(["get", memory_id, "--json"])
        memory = json.loads(capsys.readouterr().out)[0]
        assert (memory["content"], memory["category"], memory["relevance_score"]) == ("final text", "goals", 0.4)

    def test_update_reembeds_new_content(self, capsys):
        main(["store", "old words"])
        memory_id = stored_id(capsys)
        main(["update", memory_id, "--content", "new words"])
        capsys.readouterr()
        assert main(["semantic", "new words", "--json"]) == 0
        assert json.loads(capsys.readouterr().out)[0]["id"] == memory_id

    def test_update_missing(self, capsys):
        assert main(["update", "nope", "--content", "x"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_update_rejects_bad_metadata(self, capsys):
        assert main(["update", "nope", "--metadata", "[1]"]) == 1
        assert "metadata" in capsys.readouterr().err

    def test_delete(self, capsys):
        main(["store", "To be deleted via CLI."])
        memory_id = stored_id(capsys)
        assert main(["delete", memory_id]) == 0
        capsys.readouterr()
        assert main(["delete", memory_id]) == 1

    def test_stats_json(self, capsys):
        main(["store", "a", "-c", "facts"])
        main(["store", "b", "-c", "goals"])
        capsys.readouterr()
        assert main(["stats", "--json"]) == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["total"] == 2
        assert stats["categories"] == {"facts": 1, "goals": 1}
        assert stats["provider"] == {"name": "fake:md5", "dimensions": 16}


class TestSemanticCommands:
    def test_semantic_json(self, capsys):
        main(["store", "Paris is the capital of France."])
        memory_id = stored_id(capsys)
        assert main(["semantic", "Paris is the capital of France.", "--json"]) == 0
        results = json.loads(capsys.readouterr().out)
        assert results[0]["id"] == memory_id

    def test_hybrid(self, capsys):
        main(["store", "green tea with honey"])
        capsys.readouterr()
        assert main(["hybrid", "green tea", "--no-recency"]) == 0
        out = capsys.readouterr().out
        assert "green tea with honey" in out
        assert "combined=" in out

    def test_similar_unknown_memory(self, capsys):
        assert main(["similar", "unknown"]) == 1
        assert capsys.readouterr().err.startswith("Error:")

    def test_clusters(self, capsys, patched_manager):
        patched_manager.vectors["one"] = [1.0] + [0.0] * 15
        patched_manager.vectors["two"] = [1.0] + [0.0] * 15
        main(["store", "one"])
        main(["store", "two"])
        capsys.readouterr()
        assert main(["clusters", "--json"]) == 0
        clusters = json.loads(capsys.readouterr().out)
        assert len(clusters) == 1
        assert clusters[0]["size"] == 2

    def test_backfill(self, capsys):
        main(["--no-embeddings", "store", "stored offline"])
        capsys.readouterr()
        assert main(["backfill"]) == 0
        # initialize() already embedded the record, so nothing is left to do.
        assert "Generated 0 embedding(s)." in capsys.readouterr().out

    def test_semantic_disabled(self, capsys):
        assert main(["--no-embeddings", "semantic", "anything"]) == 1
        assert "Semantic search not available" in capsys.readouterr().err

    def test_unavailable_provider(self, capsys, patched_manager):
        patched_manager.available = False
        assert main(["semantic", "anything"]) == 1
        # Keyword fallback still works.
        assert main(["hybrid", "anything"]) == 0


def test_invalid_environment(capsys, monkeypatch):
    monkeypatch.setenv("RECALL_BATCH_SIZE", "lots")
    assert main(["list"]) == 1
    assert "Error" in capsys.readouterr().err
