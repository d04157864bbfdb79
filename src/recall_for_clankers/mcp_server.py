"""
MCP (Model Context Protocol) server for recall-for-clankers.

Exposes the MemoryManager as a set of Claude tools so that Claude can
persist and retrieve memories across sessions and compactions.

Run as a stdio server (Claude Desktop / claude.ai):
    python -m recall_for_clankers.mcp_server

Or via the installed entry-point:
    recall-for-clankers-mcp

Configuration comes from environment variables; see
:mod:`recall_for_clankers.config`.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from mcp.server.fastmcp import FastMCP

from .config import Settings, configure_logging
from .errors import EmbeddingError
from .memory import MEMORY_CATEGORIES, MemoryManager
from .similarity import SearchResult

# Lazy-initialised singleton so the provider is probed only once.
_manager: MemoryManager | None = None
_manager_lock = asyncio.Lock()


def _make_manager() -> MemoryManager:
    return MemoryManager(Settings.from_env())


async def _get_manager() -> MemoryManager:
    global _manager
    if _manager is not None:
        return _manager
    async with _manager_lock:
        # Concurrent first calls wait here while one of them initialises.
        if _manager is None:
            manager = _make_manager()
            await manager.initialize()
            _manager = manager
    return _manager


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2)


def _results(results: list[SearchResult]) -> list[dict[str, Any]]:
    return [r.to_dict() for r in results]


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "recall-for-clankers",
    instructions=(
        "Long-term memory for Claude. "
        "Use `store_memory` to save facts, preferences and decisions that "
        "should survive across sessions or compactions. "
        "Use `search_memory` for keyword lookups and `semantic_search_memory` "
        "or `hybrid_search_memory` to find memories by meaning. "
        "Use `list_memories` to browse and `delete_memory` to remove entries "
        "that are no longer relevant. "
        f"Categories: {', '.join(MEMORY_CATEGORIES)}."
    ),
)


@mcp.tool()
async def store_memory(
    content: str,
    category: str,
    metadata: dict[str, Any] | None = None,
    relevance_score: float = 1.0,
) -> str:
    """
    Store a new memory entry for long-term context retention.

    Args:
        content:         The text to remember.
        category:        One of facts, preferences, conversations, projects,
                         learning, goals, context, reminders.
        metadata:        Optional extra key/value pairs.
        relevance_score: Relevance from 0.0 to 1.0 (default 1.0).

    Returns:
        A confirmation message with the ID of the stored memory.
    """
    manager = await _get_manager()
    memory = await manager.store_memory(content, category, metadata, relevance_score)
    return f"Stored memory {memory.id} in category '{memory.category}'."


@mcp.tool()
async def search_memory(query: str, category: str | None = None, limit: int = 10) -> str:
    """
    Search stored memories by keyword.

    Args:
        query:    Words to look for.
        category: Optional category filter.
        limit:    Maximum number of results (default 10).

    Returns:
        JSON array of matching memories, best match first.
    """
    manager = await _get_manager()
    memories = manager.search_memories(query, category=category, limit=limit)
    if not memories:
        return "No memories found."
    return _dump([m.to_dict() for m in memories])


@mcp.tool()
async def get_memory(id: str) -> str:  # noqa: A002
    """
    Retrieve a specific memory by its ID.

    Args:
        id: The memory ID.
    """
    memory = (await _get_manager()).get_memory(id)
    if memory is None:
        return f"Memory {id} not found."
    return _dump(memory.to_dict())


@mcp.tool()
async def update_memory(
    id: str,  # noqa: A002
    content: str | None = None,
    category: str | None = None,
    metadata: dict[str, Any] | None = None,
    relevance_score: float | None = None,
) -> str:
    """
    Update an existing memory.  Only the given fields change.

    Args:
        id:              The memory ID.
        content:         New content; the memory is re-embedded.
        category:        New category.
        metadata:        Replacement metadata.
        relevance_score: New relevance from 0.0 to 1.0.
    """
    manager = await _get_manager()
    memory = await manager.update_memory(id, content, category, metadata, relevance_score)
    if memory is None:
        return f"Memory {id} not found."
    return f"Updated memory {id}.\n{_dump(memory.to_dict())}"


@mcp.tool()
async def delete_memory(id: str) -> str:  # noqa: A002
    """
    Delete a stored memory by its ID.

    Args:
        id: The ID of the memory to delete.
    """
    if (await _get_manager()).delete_memory(id):
        return f"Deleted memory {id}."
    return f"Memory {id} not found."


@mcp.tool()
async def list_memories(category: str | None = None, limit: int = 10, recent: bool = False) -> str:
    """
    List memories in a category, or the most recently updated ones.

    Args:
        category: Category to list.  Ignored when *recent* is true.
        limit:    Maximum number of entries (default 10).
        recent:   Return recent memories regardless of category.
    """
    manager = await _get_manager()
    if category and not recent:
        memories = manager.get_memories_by_category(category, limit)
    else:
        memories = manager.get_recent_memories(limit)
    if not memories:
        return "No memories stored."
    return _dump([m.to_dict() for m in memories])


@mcp.tool()
async def get_memory_stats() -> str:
    """Return memory counts per category and the semantic search status."""
    manager = await _get_manager()
    stats = manager.get_memory_stats()
    return _dump(
        {
            "total": sum(stats.values()),
            "categories": stats,
            "semantic_search_enabled": manager.is_semantic_search_enabled(),
            "provider": manager.get_provider_info(),
        }
    )


@mcp.tool()
async def semantic_search_memory(
    query: str,
    limit: int = 5,
    min_similarity: float = 0.7,
    category: str | None = None,
) -> str:
    """
    Search memories by meaning rather than exact words.

    Args:
        query:          Natural-language query.
        limit:          Maximum number of results (default 5).
        min_similarity: Cosine-similarity cut-off from 0.0 to 1.0 (default 0.7).
        category:       Optional category filter.
    """
    manager = await _get_manager()
    try:
        results = await manager.semantic_search(query, limit, min_similarity, category)
    except EmbeddingError as e:
        return f"Error: {e}"
    if not results:
        return "No similar memories found."
    return _dump(_results(results))


@mcp.tool()
async def hybrid_search_memory(
    query: str,
    limit: int = 10,
    category: str | None = None,
    text_weight: float = 0.3,
    semantic_weight: float = 0.7,
) -> str:
    """
    Search memories with keyword rank and semantic similarity combined.

    Falls back to keyword search when semantic search is unavailable.

    Args:
        query:           Query text.
        limit:           Maximum number of results (default 10).
        category:        Optional category filter.
        text_weight:     Weight of the keyword score (default 0.3).
        semantic_weight: Weight of the semantic score (default 0.7).
    """
    manager = await _get_manager()
    try:
        results = await manager.hybrid_search(
            query,
            limit=limit,
            category=category,
            text_weight=text_weight,
            semantic_weight=semantic_weight,
        )
    except EmbeddingError as e:
        return f"Error: {e}"
    if not results:
        return "No memories found."
    return _dump(_results(results))


@mcp.tool()
async def find_similar_memories(
    memory_id: str,
    limit: int = 5,
    min_similarity: float = 0.7,
    category: str | None = None,
) -> str:
    """
    Find memories similar to an existing memory.

    Args:
        memory_id:      ID of the reference memory.
        limit:          Maximum number of results (default 5).
        min_similarity: Cosine-similarity cut-off (default 0.7).
        category:       Optional category filter.
    """
    manager = await _get_manager()
    try:
        results = await manager.find_similar_memories(memory_id, limit, min_similarity, category)
    except EmbeddingError as e:
        return f"Error: {e}"
    if not results:
        return "No similar memories found."
    return _dump(_results(results))


@mcp.tool()
async def cluster_memories(threshold: float = 0.8, min_cluster_size: int = 2) -> str:
    """
    Group mutually similar memories.

    Args:
        threshold:        Similarity a member needs to the cluster seed (default 0.8).
        min_cluster_size: Smallest cluster reported (default 2).
    """
    manager = await _get_manager()
    try:
        clusters = await manager.cluster_memories(threshold, min_cluster_size)
    except EmbeddingError as e:
        return f"Error: {e}"
    if not clusters:
        return "No clusters found."
    return _dump([c.to_dict() for c in clusters])


@mcp.tool()
async def get_embedding_stats() -> str:
    """Return stored-vector counts per provider and the semantic search status."""
    manager = await _get_manager()
    return _dump(
        {
            "semantic_search_enabled": manager.is_semantic_search_enabled(),
            "provider": manager.get_provider_info(),
            "statistics": manager.get_embedding_statistics(),
        }
    )


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio (used by Claude Desktop)."""
    configure_logging(Settings.from_env().log_level)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
