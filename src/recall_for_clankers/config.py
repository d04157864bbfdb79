"""
Runtime configuration resolved from environment variables.

Environment variables:
    RECALL_DB_PATH          - SQLite record database (default: ~/.cache/recall-for-clankers/memory.db)
    RECALL_VECTOR_BACKEND   - "sqlite" (default) or "chroma"
    RECALL_CHROMA_PATH      - ChromaDB directory when the chroma backend is used
    RECALL_EMBEDDINGS       - set to "false" to disable semantic search entirely
    RECALL_PROVIDER         - "ollama" (default) or "sentence-transformers"
    RECALL_MODEL            - embedding model name (default depends on the provider)
    OLLAMA_HOST             - Ollama server URL (default: http://localhost:11434)
    RECALL_BATCH_SIZE       - coalesced batch size (default: 32)
    RECALL_MAX_RETRIES      - attempts per provider call (default: 3)
    RECALL_TIMEOUT          - provider request timeout in seconds (default: 30)
    RECALL_CACHE_SIZE       - embedding cache capacity (default: 1000)
    RECALL_CACHE_TTL        - embedding cache TTL in seconds (default: 3600)
    RECALL_LOG_LEVEL        - logging level (default: INFO)
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".cache" / "recall-for-clankers"

VECTOR_BACKENDS = ("sqlite", "chroma")
PROVIDERS = ("ollama", "sentence-transformers")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _flag(value: str) -> bool:
    return value.strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class Settings:
    db_path: str = str(_DEFAULT_HOME / "memory.db")
    vector_backend: str = "sqlite"
    chroma_path: str = str(_DEFAULT_HOME / "chroma")
    enable_embeddings: bool = True
    provider: str = "ollama"
    model: str | None = None
    ollama_host: str = "http://localhost:11434"
    batch_size: int = 32
    max_retries: int = 3
    timeout: float = 30.0
    cache_size: int = 1000
    cache_ttl: float = 3600.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.vector_backend not in VECTOR_BACKENDS:
            raise ValueError(
                f"Unsupported vector backend: {self.vector_backend!r} "
                f"(expected one of {', '.join(VECTOR_BACKENDS)})"
            )
        if self.provider not in PROVIDERS:
            raise ValueError(
                f"Unsupported embedding provider: {self.provider!r} "
                f"(expected one of {', '.join(PROVIDERS)})"
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            db_path=env.get("RECALL_DB_PATH", defaults.db_path),
            vector_backend=env.get("RECALL_VECTOR_BACKEND", defaults.vector_backend).lower(),
            chroma_path=env.get("RECALL_CHROMA_PATH", defaults.chroma_path),
            enable_embeddings=_flag(env.get("RECALL_EMBEDDINGS", "true")),
            provider=env.get("RECALL_PROVIDER", defaults.provider).lower(),
            model=env.get("RECALL_MODEL") or None,
            ollama_host=env.get("OLLAMA_HOST", defaults.ollama_host),
            batch_size=int(env.get("RECALL_BATCH_SIZE", defaults.batch_size)),
            max_retries=int(env.get("RECALL_MAX_RETRIES", defaults.max_retries)),
            timeout=float(env.get("RECALL_TIMEOUT", defaults.timeout)),
            cache_size=int(env.get("RECALL_CACHE_SIZE", defaults.cache_size)),
            cache_ttl=float(env.get("RECALL_CACHE_TTL", defaults.cache_ttl)),
            log_level=env.get("RECALL_LOG_LEVEL", defaults.log_level).upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stderr; stdout belongs to the MCP stdio transport."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
