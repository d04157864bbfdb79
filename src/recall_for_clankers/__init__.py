"""
recall-for-clankers: local long-term memory for LLMs.

Stores short text memories in SQLite and retrieves them by keyword,
by meaning (embeddings from Ollama or sentence-transformers), or both.
"""

from .config import Settings
from .database import Memory, MemoryDatabase
from .embedder import Embedder
from .errors import EmbeddingError, ErrorKind
from .memory import MEMORY_CATEGORIES, MemoryManager
from .providers import EmbeddingProvider, OllamaEmbeddingProvider, SentenceTransformerProvider
from .similarity import Cluster, SearchResult, SimilarityEngine, cosine_similarity
from .store import ChromaVectorStore, SQLiteVectorStore, VectorStore

__all__ = [
    "MEMORY_CATEGORIES",
    "ChromaVectorStore",
    "Cluster",
    "Embedder",
    "EmbeddingError",
    "EmbeddingProvider",
    "ErrorKind",
    "Memory",
    "MemoryDatabase",
    "MemoryManager",
    "OllamaEmbeddingProvider",
    "SQLiteVectorStore",
    "SearchResult",
    "SentenceTransformerProvider",
    "Settings",
    "SimilarityEngine",
    "VectorStore",
    "cosine_similarity",
]
