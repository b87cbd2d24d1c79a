"""
Persona - Vector Utilities
============================
Pure helpers over embedding vectors (``list[float]``).

Query vectors and ``embed`` results are normalised to unit length
before they are cached or returned.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

Vector = list[float]


def magnitude(vector: Sequence[float]) -> float:
    return math.sqrt(sum(v * v for v in vector))


def normalize_embedding(vector: Sequence[float]) -> Vector:
    """Scale *vector* to unit length.  A zero vector is returned unchanged."""
    norm = magnitude(vector)
    if norm == 0:
        return list(vector)
    return [v / norm for v in vector]


def normalize_embeddings(vectors: Sequence[Sequence[float]]) -> list[Vector]:
    return [normalize_embedding(v) for v in vectors]

