"""
Cosine similarity helpers used by the exact search path.

Sums are computed with ``math.fsum`` so the result does not depend on
summation order: a vector compared with itself scores exactly 1.0.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    dot = math.fsum((a * b).tolist())
    norm_sq = math.fsum((a * a).tolist()) * math.fsum((b * b).tolist())
    if norm_sq == 0.0:
        return 0.0
    return dot / math.sqrt(norm_sq)


def cosine_similarity(vec1: Sequence[float] | None, vec2: Sequence[float] | None) -> float:
    """Cosine similarity of two vectors.

    Missing vectors, mismatched lengths and zero-norm vectors yield 0.0.
    """
    if vec1 is None or vec2 is None or len(vec1) != len(vec2) or len(vec1) == 0:
        return 0.0
    return _cosine(
        np.asarray(vec1, dtype=np.float64),
        np.asarray(vec2, dtype=np.float64),
    )


def cosine_similarities(
    query: Sequence[float], vectors: Sequence[Sequence[float] | None]
) -> list[float]:
    """Score every vector against *query*.

    Rows that cannot be compared score 0.0 rather than raising.
    """
    dim = len(query)
    if dim == 0:
        return [0.0] * len(vectors)
    q = np.asarray(query, dtype=np.float64)
    scores: list[float] = []
    for vector in vectors:
        if vector is None or len(vector) != dim:
            scores.append(0.0)
            continue
        scores.append(_cosine(q, np.asarray(vector, dtype=np.float64)))
    return scores
