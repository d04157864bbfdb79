"""
Command-line interface for recall-for-clankers.

Sub-commands
------------
store    – Store a piece of text in memory.
get      – Show one memory by ID.
update   – Change the content, category, metadata or relevance of a memory.
search   – Keyword search.
semantic – Semantic (meaning-based) search.
hybrid   – Keyword and semantic search combined.
similar  – Memories similar to an existing one.
clusters – Group mutually similar memories.
list     – List memories by category or recency.
delete   – Delete a memory by its ID.
stats    – Memory and embedding statistics.
backfill – Generate vectors for memories that lack one.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from typing import Any

from .config import PROVIDERS, VECTOR_BACKENDS, Settings, configure_logging
from .database import Memory
from .errors import EmbeddingError
from .memory import MANUAL_BACKFILL_LIMIT, MemoryManager
from .similarity import SearchResult

# Commands that need the embedding provider probed before they run.
_SEMANTIC_COMMANDS = {"store", "update", "semantic", "hybrid", "similar", "clusters", "stats", "backfill"}


def _add_json(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recall-for-clankers",
        description="Local long-term memory with keyword and semantic search.",
    )
    parser.add_argument(
        "--db",
        default=None,
        metavar="PATH",
        help="SQLite record database (default: $RECALL_DB_PATH or ~/.cache/recall-for-clankers/memory.db).",
    )
    parser.add_argument(
        "--vector-backend",
        choices=VECTOR_BACKENDS,
        default=None,
        help="Where vectors are kept (default: $RECALL_VECTOR_BACKEND or sqlite).",
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=None,
        help="Embedding provider (default: $RECALL_PROVIDER or ollama).",
    )
    parser.add_argument("--model", default=None, help="Embedding model name.")
    parser.add_argument(
        "--no-embeddings",
        action="store_true",
        help="Disable semantic search and skip the provider probe.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # store
    p_store = sub.add_parser("store", help="Store text in memory.")
    p_store.add_argument("text", nargs="?", help="Text to store (reads stdin if omitted).")
    p_store.add_argument("--category", "-c", default="facts", help="Memory category (default: facts).")
    p_store.add_argument("--metadata", default=None, metavar="JSON", help="Metadata as a JSON object.")
    p_store.add_argument(
        "--relevance",
        type=float,
        default=1.0,
        metavar="SCORE",
        help="Relevance score from 0.0 to 1.0 (default: 1.0).",
    )

    # get
    p_get = sub.add_parser("get", help="Show a memory by ID.")
    p_get.add_argument("id", help="Memory ID.")
    _add_json(p_get)

    # update
    p_update = sub.add_parser("update", help="Change an existing memory.")
    p_update.add_argument("id", help="Memory ID.")
    p_update.add_argument("--content", default=None, help="Replacement text; the memory is re-embedded.")
    p_update.add_argument("--category", "-c", default=None, help="New category.")
    p_update.add_argument("--metadata", default=None, metavar="JSON", help="Replacement metadata as a JSON object.")
    p_update.add_argument("--relevance", type=float, default=None, metavar="SCORE", help="New relevance score.")

    # search
    p_search = sub.add_parser("search", help="Keyword search.")
    p_search.add_argument("query", help="Words to look for.")
    p_search.add_argument("--category", "-c", default=None, help="Category filter.")
    p_search.add_argument("-n", type=int, default=10, metavar="N", help="Number of results (default: 10).")
    _add_json(p_search)

    # semantic
    p_semantic = sub.add_parser("semantic", help="Semantic search.")
    p_semantic.add_argument("query", help="Natural-language query.")
    p_semantic.add_argument("--category", "-c", default=None, help="Category filter.")
    p_semantic.add_argument("-n", type=int, default=10, metavar="N", help="Number of results (default: 10).")
    p_semantic.add_argument(
        "--min-similarity",
        type=float,
        default=0.7,
        metavar="SCORE",
        help="Minimum cosine similarity (default: 0.7).",
    )
    _add_json(p_semantic)

    # hybrid
    p_hybrid = sub.add_parser("hybrid", help="Keyword and semantic search combined.")
    p_hybrid.add_argument("query", help="Query text.")
    p_hybrid.add_argument("--category", "-c", default=None, help="Category filter.")
    p_hybrid.add_argument("-n", type=int, default=10, metavar="N", help="Number of results (default: 10).")
    p_hybrid.add_argument("--min-similarity", type=float, default=0.5, metavar="SCORE")
    p_hybrid.add_argument("--text-weight", type=float, default=0.3, metavar="W")
    p_hybrid.add_argument("--semantic-weight", type=float, default=0.7, metavar="W")
    p_hybrid.add_argument(
        "--no-recency",
        action="store_true",
        help="Do not boost recently updated memories.",
    )
    _add_json(p_hybrid)

    # similar
    p_similar = sub.add_parser("similar", help="Memories similar to an existing one.")
    p_similar.add_argument("id", help="Reference memory ID.")
    p_similar.add_argument("--category", "-c", default=None, help="Category filter.")
    p_similar.add_argument("-n", type=int, default=5, metavar="N", help="Number of results (default: 5).")
    p_similar.add_argument("--min-similarity", type=float, default=0.7, metavar="SCORE")
    _add_json(p_similar)

    # clusters
    p_clusters = sub.add_parser("clusters", help="Group mutually similar memories.")
    p_clusters.add_argument("--threshold", type=float, default=0.8, help="Similarity to the seed (default: 0.8).")
    p_clusters.add_argument("--min-size", type=int, default=2, help="Smallest cluster shown (default: 2).")
    _add_json(p_clusters)

    # list
    p_list = sub.add_parser("list", help="List memories.")
    p_list.add_argument("--category", "-c", default=None, help="List this category instead of recent memories.")
    p_list.add_argument(
        "--limit",
        type=int,
        default=10,
        metavar="N",
        help="Maximum number of memories to show (default: 10).",
    )
    _add_json(p_list)

    # delete
    p_delete = sub.add_parser("delete", help="Delete a memory by ID.")
    p_delete.add_argument("id", help="Memory ID to delete.")

    # stats
    p_stats = sub.add_parser("stats", help="Memory and embedding statistics.")
    _add_json(p_stats)

    # backfill
    p_backfill = sub.add_parser("backfill", help="Embed memories that have no vector yet.")
    p_backfill.add_argument(
        "--limit",
        type=int,
        default=MANUAL_BACKFILL_LIMIT,
        metavar="N",
        help=f"Most recent memories to check (default: {MANUAL_BACKFILL_LIMIT}).",
    )

    return parser


def _settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if args.db:
        overrides["db_path"] = args.db
    if args.vector_backend:
        overrides["vector_backend"] = args.vector_backend
    if args.provider:
        overrides["provider"] = args.provider
    if args.model:
        overrides["model"] = args.model
    if args.no_embeddings:
        overrides["enable_embeddings"] = False
    return dataclasses.replace(Settings.from_env(), **overrides)


def _make_manager(settings: Settings) -> MemoryManager:
    return MemoryManager(settings)


def _parse_metadata(raw: str | None) -> dict[str, Any] | None:
    """Decode a --metadata argument; raises ValueError on anything but a JSON object."""
    if not raw:
        return None
    try:
        metadata = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid --metadata: {e}") from e
    if not isinstance(metadata, dict):
        raise ValueError("--metadata must be a JSON object.")
    return metadata


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _print_memories(memories: list[Memory], as_json: bool, empty: str = "No memories found.") -> None:
    if not memories:
        print(empty)
        return
    if as_json:
        print(json.dumps([m.to_dict() for m in memories], indent=2))
        return
    for m in memories:
        print(f"id={m.id} category={m.category} relevance={m.relevance_score:.2f}")
        print(f"    {m.content[:200]}")
        print()


def _print_results(results: list[SearchResult], as_json: bool) -> None:
    if not results:
        print("No memories found.")
        return
    if as_json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
        return
    for i, r in enumerate(results, 1):
        scores = f"similarity={r.similarity:.3f}"
        if r.text_score is not None:
            scores += f", text={r.text_score:.3f}, combined={r.combined_score:.3f}"
        print(f"[{i}] ({scores})")
        print(f"    {r.memory.content[:200]}")
        print(f"    id={r.memory.id} category={r.memory.category}")
        print()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _dispatch(manager: MemoryManager, args: argparse.Namespace) -> int:
    if args.command == "store":
        text = args.text
        if text is None:
            text = sys.stdin.read()
        if not text.strip():
            print("Error: no text provided.", file=sys.stderr)
            return 1
        try:
            metadata = _parse_metadata(args.metadata) or {}
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        memory = await manager.store_memory(text.strip(), args.category, metadata, args.relevance)
        print(f"Stored memory {memory.id} in category '{memory.category}'.")

    elif args.command == "get":
        memory = manager.get_memory(args.id)
        if memory is None:
            print(f"Error: memory {args.id} not found.", file=sys.stderr)
            return 1
        _print_memories([memory], args.as_json)

    elif args.command == "update":
        try:
            metadata = _parse_metadata(args.metadata)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        content = args.content.strip() if args.content is not None else None
        if content == "":
            print("Error: --content must not be empty.", file=sys.stderr)
            return 1
        memory = await manager.update_memory(args.id, content, args.category, metadata, args.relevance)
        if memory is None:
            print(f"Error: memory {args.id} not found.", file=sys.stderr)
            return 1
        print(f"Updated memory {memory.id}.")

    elif args.command == "search":
        _print_memories(manager.search_memories(args.query, args.category, args.n), args.as_json)

    elif args.command == "semantic":
        results = await manager.semantic_search(args.query, args.n, args.min_similarity, args.category)
        _print_results(results, args.as_json)

    elif args.command == "hybrid":
        results = await manager.hybrid_search(
            args.query,
            limit=args.n,
            min_similarity=args.min_similarity,
            category=args.category,
            text_weight=args.text_weight,
            semantic_weight=args.semantic_weight,
            boost_recent=not args.no_recency,
        )
        _print_results(results, args.as_json)

    elif args.command == "similar":
        results = await manager.find_similar_memories(args.id, args.n, args.min_similarity, args.category)
        _print_results(results, args.as_json)

    elif args.command == "clusters":
        clusters = await manager.cluster_memories(args.threshold, args.min_size)
        if args.as_json:
            print(json.dumps([c.to_dict() for c in clusters], indent=2))
        elif not clusters:
            print("No clusters found.")
        else:
            for i, cluster in enumerate(clusters, 1):
                print(f"Cluster {i}: {len(cluster)} memories, avg similarity {cluster.avg_similarity:.3f}")
                for member in cluster.members:
                    print(f"    {member.memory.id}  {member.memory.content[:100]}")
                print()

    elif args.command == "list":
        if args.category:
            memories = manager.get_memories_by_category(args.category, args.limit)
        else:
            memories = manager.get_recent_memories(args.limit)
        _print_memories(memories, args.as_json, empty="No memories stored.")

    elif args.command == "delete":
        if not manager.delete_memory(args.id):
            print(f"Error: memory {args.id} not found.", file=sys.stderr)
            return 1
        print(f"Deleted memory {args.id}.")

    elif args.command == "stats":
        stats = {
            "total": manager.count(),
            "categories": manager.get_memory_stats(),
            "semantic_search_enabled": manager.is_semantic_search_enabled(),
            "provider": manager.get_provider_info(),
            "embeddings": manager.get_embedding_statistics(),
        }
        if args.as_json:
            print(json.dumps(stats, indent=2))
        else:
            print(f"Memories: {stats['total']}")
            for category, count in sorted(stats["categories"].items()):
                print(f"    {category}: {count}")
            provider = stats["provider"]
            print(f"Semantic search: {'on (' + provider['name'] + ')' if provider else 'off'}")
            if stats["embeddings"]:
                print(f"Embeddings: {stats['embeddings']['total_embeddings']}")

    elif args.command == "backfill":
        stored = await manager.generate_missing_embeddings(args.limit)
        print(f"Generated {stored} embedding(s).")

    return 0


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    manager = _make_manager(settings)
    try:
        if args.command in _SEMANTIC_COMMANDS:
            await manager.initialize()
        return await _dispatch(manager, args)
    except EmbeddingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await manager.aclose()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        settings = _settings(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    configure_logging(settings.log_level)
    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
