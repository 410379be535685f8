"""
Seeded k-means with k-means++ initialization, used to train product quantizer codebooks.

All randomness comes from the ``numpy.random.Generator`` passed in, so the
same seed gives the same centroids on every run.
"""

from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple

import numpy as np

from ..core.config import (
    DEFAULT_CONVERGENCE_THRESHOLD,
    DEFAULT_MAX_ITERATIONS,
    MAX_KMEANS_ITERATIONS,
    SEARCH_CHUNK_ROWS,
)
from ..core.errors import ValidationError


@dataclass
class KMeansStep:
    """State after one assignment/update round."""

    iteration: int
    inertia: float
    changed: int
    converged: bool
    centroids: np.ndarray
    assignments: np.ndarray


@dataclass
class KMeansResult:
    centroids: np.ndarray
    assignments: np.ndarray
    inertia: float
    iterations: int
    converged: bool


def assign(points: np.ndarray, centroids: np.ndarray, chunk_rows: int = SEARCH_CHUNK_ROWS) -> Tuple[np.ndarray, np.ndarray]:
    """Nearest centroid for every point and the squared distance to it.

    Ties go to the lowest centroid index.
    """
    points = np.asarray(points, dtype=np.float64)
    centroids = np.asarray(centroids, dtype=np.float64)
    count = points.shape[0]
    labels = np.empty(count, dtype=np.int64)
    distances = np.empty(count, dtype=np.float64)
    centroid_sq = np.einsum("ij,ij->i", centroids, centroids)

    for start in range(0, count, max(1, chunk_rows)):
        block = points[start:start + chunk_rows]
        # ||p - c||^2 = ||p||^2 - 2 p.c + ||c||^2
        block_sq = np.einsum("ij,ij->i", block, block)
        d = block_sq[:, None] - 2.0 * (block @ centroids.T) + centroid_sq
        np.maximum(d, 0.0, out=d)
        nearest = np.argmin(d, axis=1)
        labels[start:start + len(block)] = nearest
        distances[start:start + len(block)] = d[np.arange(len(block)), nearest]

    return labels, distances


def kmeans_plus_plus(points: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """Choose ``k`` initial centroids from ``points``.

    The first centroid is uniform; each next one is drawn with probability
    proportional to its squared distance from the nearest centroid chosen so
    far. When every point already coincides with a centroid the draw is uniform.
    """
    points = np.asarray(points, dtype=np.float64)
    count = points.shape[0]
    if not 1 <= k <= count:
        raise ValidationError(f"cannot seed {k} centroids from {count} points")

    centroids = np.empty((k, points.shape[1]), dtype=np.float64)
    centroids[0] = points[rng.integers(count)]
    closest = np.sum((points - centroids[0]) ** 2, axis=1)

    for i in range(1, k):
        cumulative = np.cumsum(closest)
        total = cumulative[-1]
        if total > 0:
            target = rng.random() * total
            index = min(int(np.searchsorted(cumulative, target, side="right")), count - 1)
        else:
            index = int(rng.integers(count))
        centroids[i] = points[index]
        np.minimum(closest, np.sum((points - centroids[i]) ** 2, axis=1), out=closest)

    return centroids


def kmeans_steps(
    points: np.ndarray,
    k: int,
    rng: np.random.Generator,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    convergence_threshold: float = DEFAULT_CONVERGENCE_THRESHOLD,
    chunk_rows: int = SEARCH_CHUNK_ROWS,
) -> Iterator[KMeansStep]:
    """Run Lloyd iterations, yielding after each one.

    Stops when no point changes cluster, when inertia moves by less than
    ``convergence_threshold``, or after ``max_iterations`` rounds (never more
    than MAX_KMEANS_ITERATIONS). A cluster that loses all its points keeps its
    previous centroid.
    """
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2:
        raise ValidationError(f"k-means expects a 2-D array, got shape {points.shape}")
    count, width = points.shape
    if k < 1:
        raise ValidationError(f"k must be >= 1, got {k}")
    if count < k:
        raise ValidationError(f"need at least {k} points to form {k} clusters, got {count}")

    max_iterations = min(max(1, max_iterations), MAX_KMEANS_ITERATIONS)
    centroids = kmeans_plus_plus(points, k, rng)
    assignments = np.full(count, -1, dtype=np.int64)
    previous_inertia: Optional[float] = None

    for iteration in range(1, max_iterations + 1):
        labels, distances = assign(points, centroids, chunk_rows)
        changed = int(np.count_nonzero(labels != assignments))
        assignments = labels
        inertia = float(distances.sum())

        sizes = np.bincount(labels, minlength=k)
        occupied = sizes > 0
        for j in range(width):
            sums = np.bincount(labels, weights=points[:, j], minlength=k)
            centroids[occupied, j] = sums[occupied] / sizes[occupied]

        converged = changed == 0 or (
            previous_inertia is not None and abs(previous_inertia - inertia) < convergence_threshold
        )
        previous_inertia = inertia
        yield KMeansStep(
            iteration=iteration,
            inertia=inertia,
            changed=changed,
            converged=converged,
            centroids=centroids.copy(),
            assignments=assignments,
        )
        if converged:
            return


def kmeans(
    points: np.ndarray,
    k: int,
    rng: np.random.Generator,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    convergence_threshold: float = DEFAULT_CONVERGENCE_THRESHOLD,
    on_step: Optional[Callable[[KMeansStep], None]] = None,
) -> KMeansResult:
    """Cluster ``points`` into ``k`` groups. Centroids are returned as float32."""
    step = None
    for step in kmeans_steps(points, k, rng, max_iterations, convergence_threshold):
        if on_step is not None:
            on_step(step)
    return result_from_step(step)


def result_from_step(step: KMeansStep) -> KMeansResult:
    return KMeansResult(
        centroids=step.centroids.astype(np.float32),
        assignments=step.assignments,
        inertia=step.inertia,
        iterations=step.iteration,
        converged=step.converged,
    )
