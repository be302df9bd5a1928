"""Embedding vector packing and cosine distance."""

from __future__ import annotations

import math
import struct

Vector = list[float]


def pack_vector(vector: Vector) -> bytes:
    return struct.pack(f"{len(vector)}f", *vector)


def unpack_vector(blob: bytes, dim: int) -> Vector:
    unpacked = struct.unpack(f"{dim}f", blob)
    return list(unpacked)


def cosine_distance(left: Vector, right: Vector) -> float:
    """Cosine distance ``1 - cos(left, right)`` in ``[0, 2]``.

    Vectors need not be normalized. A zero-norm side has no direction and is
    treated as orthogonal (distance 1.0).
    """

    if len(left) != len(right):
        raise ValueError("Vectors must have the same size")

    dot = 0.0
    left_norm = 0.0
    right_norm = 0.0
    for l_value, r_value in zip(left, right, strict=True):
        dot += l_value * r_value
        left_norm += l_value * l_value
        right_norm += r_value * r_value
    if left_norm == 0.0 or right_norm == 0.0:
        return 1.0
    similarity = dot / (math.sqrt(left_norm) * math.sqrt(right_norm))
    return 1.0 - max(-1.0, min(1.0, similarity))


def is_valid_vector(vector: Vector, dimensions: int) -> bool:
    """Non-empty, exactly ``dimensions`` long, finite and not all zeros."""

    if not vector or len(vector) != dimensions:
        return False
    if not all(math.isfinite(value) for value in vector):
        return False
    return any(value != 0.0 for value in vector)
