"""
SQLite record database with an FTS5 keyword index.

Holds the memory records themselves and answers lexical (keyword)
searches.  Vectors are kept separately by a
:class:`~recall_for_clankers.store.VectorStore`.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    category TEXT NOT NULL,
    metadata TEXT DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    relevance_score REAL DEFAULT 1.0
);

CREATE INDEX IF NOT EXISTS idx_memories_category ON memories(category);
CREATE INDEX IF NOT EXISTS idx_memories_updated_at ON memories(updated_at);
CREATE INDEX IF NOT EXISTS idx_memories_relevance ON memories(relevance_score);

CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    id UNINDEXED,
    content,
    category,
    content=memories,
    content_rowid=rowid
);

CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, id, content, category)
    VALUES (new.rowid, new.id, new.content, new.category);
END;

CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, id, content, category)
    VALUES ('delete', old.rowid, old.id, old.content, old.category);
END;

CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, id, content, category)
    VALUES ('delete', old.rowid, old.id, old.content, old.category);
    INSERT INTO memories_fts(rowid, id, content, category)
    VALUES (new.rowid, new.id, new.content, new.category);
END;
"""

# SQLite's default limit on bound parameters is 999 on older builds.
_MAX_PARAMS = 500


@dataclass
class Memory:
    """A stored memory record.  Timestamps are seconds since the epoch."""

    id: str
    content: str
    category: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0
    relevance_score: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_metadata(memory_id: str, raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse metadata for memory %s: %s", memory_id, e)
        return {}
    return value if isinstance(value, dict) else {}


def _row_to_memory(row: sqlite3.Row) -> Memory:
    return Memory(
        id=row["id"],
        content=row["content"],
        category=row["category"],
        metadata=_parse_metadata(row["id"], row["metadata"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        relevance_score=row["relevance_score"],
    )


def build_match_query(query: str) -> str | None:
    """
    Turn free text into an FTS5 MATCH expression.

    Every word becomes a quoted term and the terms are OR-ed, so user
    punctuation can never produce an FTS syntax error.  Returns ``None``
    when the text holds no searchable words.
    """
    terms = re.findall(r"\w+", query)
    if not terms:
        return None
    return " OR ".join(f'"{term}"' for term in terms)


class MemoryDatabase:
    """
    Record storage backed by a single SQLite file.

    Parameters
    ----------
    path:
        Database file, or ``":memory:"`` for a private in-memory database.
    clock:
        Source of timestamps, injectable for tests.
    """

    def __init__(
        self,
        path: str | Path = "./memory.db",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self.connection = sqlite3.connect(self.path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        self.connection.execute("PRAGMA foreign_keys = ON")
        self.connection.executescript(_SCHEMA)

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def create_memory(
        self,
        id: str,
        content: str,
        category: str,
        metadata: dict[str, Any] | None = None,
        relevance_score: float = 1.0,
    ) -> Memory:
        now = self.now()
        memory = Memory(
            id=id,
            content=content,
            category=category,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
            relevance_score=relevance_score,
        )
        with self.connection:
            self.connection.execute(
                """
                INSERT INTO memories
                    (id, content, category, metadata, created_at, updated_at, relevance_score)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    memory.id,
                    memory.content,
                    memory.category,
                    json.dumps(memory.metadata),
                    memory.created_at,
                    memory.updated_at,
                    memory.relevance_score,
                ),
            )
        return memory

    def update_memory(
        self,
        id: str,
        content: str | None = None,
        category: str | None = None,
        metadata: dict[str, Any] | None = None,
        relevance_score: float | None = None,
    ) -> Memory | None:
        """Apply the given changes; returns ``None`` if *id* does not exist."""
        existing = self.get_memory(id)
        if existing is None:
            return None

        if content is not None:
            existing.content = content
        if category is not None:
            existing.category = category
        if metadata is not None:
            existing.metadata = dict(metadata)
        if relevance_score is not None:
            existing.relevance_score = relevance_score
        existing.updated_at = self.now()

        with self.connection:
            self.connection.execute(
                """
                UPDATE memories
                SET content = ?, category = ?, metadata = ?, updated_at = ?, relevance_score = ?
                WHERE id = ?
                """,
                (
                    existing.content,
                    existing.category,
                    json.dumps(existing.metadata),
                    existing.updated_at,
                    existing.relevance_score,
                    id,
                ),
            )
        return existing

    def delete_memory(self, id: str) -> bool:
        with self.connection:
            cursor = self.connection.execute("DELETE FROM memories WHERE id = ?", (id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get_memory(self, id: str) -> Memory | None:
        row = self.connection.execute("SELECT * FROM memories WHERE id = ?", (id,)).fetchone()
        return _row_to_memory(row) if row else None

    def get_memories(self, ids: Iterable[str]) -> dict[str, Memory]:
        """Fetch several records at once, keyed by id.  Unknown ids are absent."""
        wanted = list(dict.fromkeys(ids))
        found: dict[str, Memory] = {}
        for start in range(0, len(wanted), _MAX_PARAMS):
            chunk = wanted[start : start + _MAX_PARAMS]
            placeholders = ", ".join("?" for _ in chunk)
            rows = self.connection.execute(
                f"SELECT * FROM memories WHERE id IN ({placeholders})", chunk
            ).fetchall()
            for row in rows:
                found[row["id"]] = _row_to_memory(row)
        return found

    def search_memories(
        self,
        query: str,
        limit: int = 10,
        category: str | None = None,
    ) -> list[Memory]:
        """Keyword search, best match first."""
        match = build_match_query(query)
        if match is None:
            return []

        sql = """
            SELECT m.* FROM memories_fts
            JOIN memories m ON m.rowid = memories_fts.rowid
            WHERE memories_fts MATCH ?
        """
        params: list[Any] = [match]
        if category is not None:
            sql += " AND m.category = ?"
            params.append(category)
        sql += " ORDER BY bm25(memories_fts), m.relevance_score DESC, m.updated_at DESC LIMIT ?"
        params.append(limit)

        return [_row_to_memory(row) for row in self.connection.execute(sql, params)]

    def get_memories_by_category(self, category: str, limit: int = 10) -> list[Memory]:
        rows = self.connection.execute(
            """
            SELECT * FROM memories
            WHERE category = ?
            ORDER BY relevance_score DESC, updated_at DESC
            LIMIT ?
            """,
            (category, limit),
        )
        return [_row_to_memory(row) for row in rows]

    def get_recent_memories(self, limit: int = 10) -> list[Memory]:
        rows = self.connection.execute(
            "SELECT * FROM memories ORDER BY updated_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )
        return [_row_to_memory(row) for row in rows]

    def get_categories(self) -> list[str]:
        rows = self.connection.execute("SELECT DISTINCT category FROM memories ORDER BY category")
        return [row["category"] for row in rows]

    def get_memory_stats(self) -> dict[str, int]:
        """Number of memories per category."""
        rows = self.connection.execute(
            "SELECT category, COUNT(*) AS count FROM memories GROUP BY category"
        )
        return {row["category"]: row["count"] for row in rows}

    def count(self) -> int:
        return self.connection.execute("SELECT COUNT(*) FROM memories").fetchone()[0]

    def close(self) -> None:
        self.connection.close()
