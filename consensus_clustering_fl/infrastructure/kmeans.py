"""Infrastructure: K-means clustering of model vectors under a chosen metric."""

import logging
from typing import List, Optional

import numpy as np

from consensus_clustering_fl.config import ClusteringMethod, DistanceMetric
from consensus_clustering_fl.distance import compute_distance
from consensus_clustering_fl.domain.clustering import (
    ClusteringEngine,
    ClusteringInput,
    normalize_labels,
)
from consensus_clustering_fl.rng import DeterministicRandomSource

logger = logging.getLogger(__name__)


def _distances_to(
    vectors: np.ndarray,
    centroid: np.ndarray,
    metric: DistanceMetric,
) -> np.ndarray:
    return np.array([compute_distance(v, centroid, metric) for v in vectors])


def kmeans_plus_plus(
    vectors: np.ndarray,
    k: int,
    metric: DistanceMetric,
    rng: DeterministicRandomSource,
) -> List[np.ndarray]:
    """Pick ``k`` initial centroids, each with probability proportional to its
    squared distance to the nearest centroid chosen so far."""
    n = len(vectors)
    centroids = [vectors[rng.randrange(n)].copy()]
    nearest = _distances_to(vectors, centroids[0], metric)

    while len(centroids) < k:
        weights = nearest**2
        threshold = rng.random() * float(weights.sum())
        selected = 0
        for i in range(n):
            threshold -= weights[i]
            if threshold <= 0:
                selected = i
                break
        centroids.append(vectors[selected].copy())
        nearest = np.minimum(nearest, _distances_to(vectors, centroids[-1], metric))

    return centroids


def kmeans(
    vectors: np.ndarray,
    k: int,
    metric: DistanceMetric,
    rng: DeterministicRandomSource,
    max_iterations: int = 100,
) -> np.ndarray:
    """Lloyd iterations from a k-means++ start.

    ``k`` is clamped to ``[1, n]``. A centroid left without members is
    re-seeded from a random data point.

    Returns:
        Raw centroid index per vector (not relabelled).
    """
    vectors = np.asarray(vectors, dtype=np.float64)
    n = len(vectors)
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    k = min(max(int(k), 1), n)

    centroids = kmeans_plus_plus(vectors, k, metric, rng)
    assignments = np.zeros(n, dtype=np.int64)

    for iteration in range(max_iterations):
        distances = np.stack([_distances_to(vectors, c, metric) for c in centroids], axis=1)
        new_assignments = np.argmin(distances, axis=1)

        converged = np.array_equal(new_assignments, assignments)
        assignments = new_assignments
        if converged:
            break

        for c in range(k):
            members = vectors[assignments == c]
            if len(members) == 0:
                centroids[c] = vectors[rng.randrange(n)].copy()
                logger.debug("Re-seeded empty centroid %d at iteration %d", c, iteration)
            else:
                centroids[c] = members.mean(axis=0)

    return assignments


def inertia(
    vectors: np.ndarray,
    assignments: np.ndarray,
    metric: DistanceMetric,
) -> float:
    """Sum of squared distances from each vector to its cluster mean."""
    total = 0.0
    for c in np.unique(assignments):
        members = vectors[assignments == c]
        centroid = members.mean(axis=0)
        total += float(np.sum(_distances_to(members, centroid, metric) ** 2))
    return total


def elbow_k(
    vectors: np.ndarray,
    metric: DistanceMetric,
    rng: DeterministicRandomSource,
    max_k: int = 5,
    max_iterations: int = 50,
) -> int:
    """Choose ``k`` where the inertia curve bends the most."""
    n = len(vectors)
    if n <= 1:
        return 1
    if n <= max_k:
        max_k = n - 1

    inertias = []
    for k in range(1, max_k + 1):
        assignments = kmeans(vectors, k, metric, rng, max_iterations=max_iterations)
        inertias.append(inertia(vectors, assignments, metric))

    if len(inertias) <= 2:
        return min(2, n)

    best_k = 2
    max_change = 0.0
    for i in range(1, len(inertias) - 1):
        change = (inertias[i - 1] - inertias[i]) - (inertias[i] - inertias[i + 1])
        if change > max_change:
            max_change = change
            best_k = i + 1
    return best_k


class KMeansClustering(ClusteringEngine):
    """K-means over flattened model vectors.

    Args:
        n_clusters: Fixed ``k``; ``None`` selects ``k`` with the elbow heuristic.
        max_k: Largest ``k`` tried by the elbow heuristic.
        max_iterations: Lloyd iteration cap.
    """

    def __init__(
        self,
        n_clusters: Optional[int] = None,
        max_k: int = 5,
        max_iterations: int = 100,
    ):
        self.n_clusters = n_clusters
        self.max_k = max_k
        self.max_iterations = max_iterations

    @property
    def method(self) -> ClusteringMethod:
        return ClusteringMethod.KMEANS

    def fit_predict(
        self,
        data: ClusteringInput,
        rng: DeterministicRandomSource,
    ) -> np.ndarray:
        if data.vectors is None:
            raise ValueError("K-means clustering needs model vectors")
        vectors = np.asarray(data.vectors, dtype=np.float64)
        if data.reference is not None:
            vectors = vectors - data.reference

        k = self.n_clusters
        if k is None:
            k = elbow_k(vectors, data.metric, rng, max_k=self.max_k)
            logger.debug("Elbow heuristic selected k=%d", k)

        assignments = kmeans(vectors, k, data.metric, rng, self.max_iterations)
        return normalize_labels(assignments)
