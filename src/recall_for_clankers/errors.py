"""
Error kinds raised by the embedding and similarity layers.

Every error carries an :class:`ErrorKind` tag so callers that need to
branch on the failure (the MCP layer, the backfill fallback) can do so
without matching on message text.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    REQUEST_TIMEOUT = "request_timeout"
    BATCH_LENGTH_MISMATCH = "batch_length_mismatch"
    RETRY_EXHAUSTED = "retry_exhausted"
    EMBEDDING_NOT_FOUND = "embedding_not_found"
    DIMENSION_MISMATCH = "dimension_mismatch"
    VECTOR_FORMAT = "vector_format"
    SEMANTIC_SEARCH_DISABLED = "semantic_search_disabled"


class EmbeddingError(Exception):
    """Base class for all embedding-subsystem failures."""

    kind: ErrorKind

    #: Integrity errors indicate corrupt or inconsistent data and are never
    #: retried verbatim.
    integrity: bool = False


class ProviderUnavailable(EmbeddingError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE


class RequestTimeout(EmbeddingError):
    kind = ErrorKind.REQUEST_TIMEOUT


class BatchLengthMismatch(EmbeddingError):
    """A batch call returned a different number of vectors than texts sent."""

    kind = ErrorKind.BATCH_LENGTH_MISMATCH
    integrity = True

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"Expected {expected} embeddings, got {received}")
        self.expected = expected
        self.received = received


class DimensionMismatch(EmbeddingError):
    kind = ErrorKind.DIMENSION_MISMATCH
    integrity = True

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(
            f"Embedding has {received} dimensions, expected {expected}"
        )
        self.expected = expected
        self.received = received


class VectorFormatError(EmbeddingError):
    """A persisted vector blob does not match the float32 layout."""

    kind = ErrorKind.VECTOR_FORMAT
    integrity = True


class RetryExhausted(EmbeddingError):
    kind = ErrorKind.RETRY_EXHAUSTED

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Operation failed after {attempts} attempts: {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


class EmbeddingNotFound(EmbeddingError):
    kind = ErrorKind.EMBEDDING_NOT_FOUND

    def __init__(self, memory_id: str) -> None:
        super().__init__(f"No embedding found for memory {memory_id}")
        self.memory_id = memory_id


class SemanticSearchDisabled(EmbeddingError):
    kind = ErrorKind.SEMANTIC_SEARCH_DISABLED

    def __init__(self) -> None:
        super().__init__("Semantic search not available. Embeddings are disabled.")
