"""Distances between client models and the similarity graph built from them."""

import logging
from typing import Optional, Sequence, Union

import numpy as np
from sklearn.metrics import pairwise_distances

from consensus_clustering_fl.config import DistanceMetric

logger = logging.getLogger(__name__)

# sklearn metric names for each supported distance
_SKLEARN_METRICS = {
    DistanceMetric.L1: "manhattan",
    DistanceMetric.L2: "euclidean",
    DistanceMetric.COSINE: "cosine",
}

MetricLike = Union[DistanceMetric, str]


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity; 0 when either vector is all zeros."""
    denominator = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(a, b) / denominator)


def compute_distance(
    a: np.ndarray,
    b: np.ndarray,
    metric: MetricLike = DistanceMetric.COSINE,
    reference: Optional[np.ndarray] = None,
) -> float:
    """Distance between two vectors.

    Args:
        a: First vector.
        b: Second vector.
        metric: ``l1``, ``l2`` or ``cosine`` (1 - cosine similarity).
        reference: When given (and of matching length), both vectors are
            translated by ``-reference`` first, so the distance compares
            update directions rather than absolute weights.

    Returns:
        Non-negative distance.
    """
    metric = DistanceMetric(metric)
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if reference is not None and len(reference) == len(a):
        a = a - reference
        b = b - reference

    if metric is DistanceMetric.L1:
        return float(np.sum(np.abs(a - b)))
    if metric is DistanceMetric.L2:
        return float(np.sqrt(np.sum((a - b) ** 2)))
    return 1.0 - cosine_similarity(a, b)


def pairwise_distance_matrix(
    vectors: Union[np.ndarray, Sequence[np.ndarray]],
    metric: MetricLike = DistanceMetric.COSINE,
    reference: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Symmetric ``[n, n]`` distance matrix with a zero diagonal.

    Args:
        vectors: ``n`` vectors of equal length.
        metric: Distance metric.
        reference: Optional vector subtracted from every input first.

    Returns:
        Distance matrix.
    """
    metric = DistanceMetric(metric)
    X = np.asarray(vectors, dtype=np.float64)
    n = len(X)
    if n == 0:
        return np.zeros((0, 0))
    if X.ndim == 1:
        X = X.reshape(n, -1)
    if reference is not None and len(reference) == X.shape[1]:
        X = X - np.asarray(reference, dtype=np.float64)

    D = pairwise_distances(X, metric=_SKLEARN_METRICS[metric])
    if metric is DistanceMetric.COSINE:
        D = np.clip(D, 0.0, 2.0)
    D = np.maximum(D, 0.0)
    D = (D + D.T) / 2.0
    np.fill_diagonal(D, 0.0)
    logger.debug("Computed %dx%d %s distance matrix", n, n, metric.value)
    return D


def mean_pairwise_distance(D: np.ndarray) -> float:
    """Mean of the strictly upper-triangular entries (0 when there are none)."""
    n = len(D)
    if n < 2:
        return 0.0
    return float(np.mean(D[np.triu_indices(n, k=1)]))


def distances_to_adjacency(D: np.ndarray) -> np.ndarray:
    """Turn distances into similarity weights ``exp(-D / sigma)``.

    ``sigma`` is the mean off-diagonal distance, or 1 when that is zero
    or undefined. The diagonal is zero (no self loops).
    """
    D = np.asarray(D, dtype=np.float64)
    n = len(D)
    sigma = mean_pairwise_distance(D) if n >= 2 else 1.0
    if not np.isfinite(sigma) or sigma == 0.0:
        sigma = 1.0
    A = np.exp(-D / sigma)
    np.fill_diagonal(A, 0.0)
    return A
