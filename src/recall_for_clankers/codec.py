"""
Binary layout of persisted vectors.

A vector is stored as consecutive little-endian IEEE-754 float32 values,
so a blob is exactly ``dimensions * 4`` bytes long.  Blobs of any other
length are rejected instead of being reinterpreted.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from .errors import VectorFormatError

#: numpy dtype of one stored component.
FLOAT32_LE = np.dtype("<f4")

BYTES_PER_COMPONENT: int = FLOAT32_LE.itemsize


def pack_vector(vector: Sequence[float]) -> bytes:
    """Encode *vector* as little-endian float32 bytes."""
    return np.asarray(vector, dtype=FLOAT32_LE).tobytes()


def unpack_vector(blob: bytes, dimensions: int | None = None) -> list[float]:
    """
    Decode a blob produced by :func:`pack_vector`.

    When *dimensions* is given the blob must be exactly
    ``dimensions * 4`` bytes; otherwise it only has to be a whole number
    of float32 values.
    """
    if dimensions is not None and len(blob) != dimensions * BYTES_PER_COMPONENT:
        raise VectorFormatError(
            f"Vector blob is {len(blob)} bytes, expected {dimensions * BYTES_PER_COMPONENT} "
            f"for {dimensions} float32 dimensions"
        )
    if len(blob) % BYTES_PER_COMPONENT:
        raise VectorFormatError(
            f"Vector blob length {len(blob)} is not a multiple of {BYTES_PER_COMPONENT}"
        )
    return np.frombuffer(blob, dtype=FLOAT32_LE).astype(float).tolist()
