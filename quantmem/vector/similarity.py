"""
Vector math shared by the codecs and the store: input coercion, norms and metric scoring.
"""

from typing import Tuple

import numpy as np

from ..core.errors import ValidationError


def as_vector(values, dimension: int = None, name: str = "vector") -> np.ndarray:
    """Coerce ``values`` into a 1-D float32 array, checking length and finiteness."""
    try:
        vector = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a sequence of numbers") from exc

    if vector.ndim != 1:
        raise ValidationError(f"{name} must be one-dimensional, got shape {vector.shape}")
    if dimension is not None and vector.shape[0] != dimension:
        raise ValidationError(
            f"{name} dimension {vector.shape[0]} does not match expected dimension {dimension}"
        )
    if not np.all(np.isfinite(vector)):
        raise ValidationError(f"{name} contains NaN or infinite values")
    return vector


def as_matrix(values, dimension: int = None, name: str = "vectors") -> np.ndarray:
    """Coerce a batch of vectors into a 2-D float32 array of shape ``(n, dimension)``."""
    try:
        matrix = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be equal-length sequences of numbers") from exc

    if matrix.ndim == 1 and matrix.shape[0] == 0:
        matrix = matrix.reshape(0, dimension or 0)
    if matrix.ndim != 2:
        raise ValidationError(f"{name} must be two-dimensional, got shape {matrix.shape}")
    if dimension is not None and matrix.shape[1] != dimension:
        raise ValidationError(
            f"{name} dimension {matrix.shape[1]} does not match expected dimension {dimension}"
        )
    if not np.all(np.isfinite(matrix)):
        raise ValidationError(f"{name} contain NaN or infinite values")
    return matrix


def squared_l2(a: np.ndarray, b: np.ndarray) -> float:
    diff = a.astype(np.float64) - b.astype(np.float64)
    return float(np.dot(diff, diff))


def score_rows(metric: str, dots: np.ndarray, row_sq_norms: np.ndarray, query_sq_norm: float) -> Tuple[np.ndarray, np.ndarray]:
    """Turn per-row ``q . r`` and ``|r|^2`` into (distance, similarity) arrays.

    ``r`` is always the reconstruction of a stored row, so cosine is computed
    after dequantization. Zero-norm rows or queries score a similarity of 0.
    """
    if metric == "l2":
        distances = np.maximum(query_sq_norm - 2.0 * dots + row_sq_norms, 0.0)
        return distances, 1.0 / (1.0 + distances)

    if metric == "ip":
        return -dots, dots.copy()

    # cosine
    denom = np.sqrt(np.maximum(row_sq_norms, 0.0)) * np.sqrt(max(query_sq_norm, 0.0))
    similarities = np.zeros_like(dots)
    np.divide(dots, denom, out=similarities, where=denom > 0)
    np.clip(similarities, -1.0, 1.0, out=similarities)
    return 1.0 - similarities, similarities
