"""Cosine similarity helpers."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .models import Embedding

VectorLike = Embedding | Sequence[float] | np.ndarray


def _as_array(value: VectorLike) -> np.ndarray:
    if isinstance(value, Embedding):
        return value.vector.astype(np.float64)
    return np.asarray(value, dtype=np.float64).reshape(-1)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Return the cosine similarity of *a* and *b*.

    Vectors of different length, or with zero norm, score ``0.0``.
    """

    left = _as_array(a)
    right = _as_array(b)
    if left.shape != right.shape or left.size == 0:
        return 0.0
    norm_left = float(np.linalg.norm(left))
    norm_right = float(np.linalg.norm(right))
    if norm_left == 0.0 or norm_right == 0.0:
        return 0.0
    value = float(np.dot(left, right)) / (norm_left * norm_right)
    return float(np.clip(value, -1.0, 1.0))


def similarity_scores(query: VectorLike, references: Sequence[VectorLike]) -> np.ndarray:
    """Cosine similarity of *query* against every reference, in one pass.

    Rows whose length differs from the query, or whose norm is zero, score
    ``0.0`` exactly as :func:`cosine_similarity` would.
    """

    query_vec = _as_array(query)
    if not references:
        return np.zeros(0, dtype=np.float64)

    rows = [_as_array(reference) for reference in references]
    scores = np.zeros(len(rows), dtype=np.float64)
    query_norm = float(np.linalg.norm(query_vec))
    if query_vec.size == 0 or query_norm == 0.0:
        return scores

    comparable = [index for index, row in enumerate(rows) if row.shape == query_vec.shape]
    if not comparable:
        return scores

    matrix = np.stack([rows[index] for index in comparable], axis=0)
    norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ query_vec
    with np.errstate(divide="ignore", invalid="ignore"):
        values = np.where(norms > 0.0, dots / (norms * query_norm), 0.0)
    scores[comparable] = np.clip(values, -1.0, 1.0)
    return scores
