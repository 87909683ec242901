"""Infrastructure: Spectral clustering on the client similarity graph."""

import logging
import warnings
from typing import List, Optional

import numpy as np
from sklearn.cluster import KMeans

from consensus_clustering_fl.config import ClusteringMethod
from consensus_clustering_fl.domain.clustering import (
    ClusteringEngine,
    ClusteringInput,
    normalize_labels,
)
from consensus_clustering_fl.rng import DeterministicRandomSource

logger = logging.getLogger(__name__)


def normalized_laplacian(S: np.ndarray) -> np.ndarray:
    """``L = I - D^-1/2 S D^-1/2``; isolated nodes get a zero row."""
    S = np.asarray(S, dtype=np.float64)
    degree = S.sum(axis=1)
    with np.errstate(divide="ignore"):
        inv_sqrt = np.where(degree > 0, 1.0 / np.sqrt(degree), 0.0)
    L = -S * np.outer(inv_sqrt, inv_sqrt)
    np.fill_diagonal(L, np.where(degree > 0, 1.0, 0.0))
    return L


def power_iteration(
    matrix: np.ndarray,
    rng: DeterministicRandomSource,
    max_iterations: int = 100,
    tolerance: float = 1e-6,
) -> np.ndarray:
    """Dominant eigenvector of ``matrix`` from a random start vector."""
    n = len(matrix)
    v = rng.uniform_array(n, -0.5, 0.5)
    v = v / np.linalg.norm(v)

    for _ in range(max_iterations):
        w = matrix @ v
        norm = np.linalg.norm(w)
        if norm == 0:
            break
        w = w / norm
        diff = float(np.sum(np.abs(w - v)))
        v = w
        if diff < tolerance:
            break
    return v


def rayleigh_quotient(matrix: np.ndarray, v: np.ndarray) -> float:
    denominator = float(v @ v)
    return float(v @ (matrix @ v)) / denominator if denominator > 0 else 0.0


def deflate(matrix: np.ndarray, eigenvector: np.ndarray, eigenvalue: float) -> np.ndarray:
    return matrix - eigenvalue * np.outer(eigenvector, eigenvector)


def smallest_eigenvectors(
    L: np.ndarray,
    k: int,
    rng: DeterministicRandomSource,
) -> List[np.ndarray]:
    """``k`` eigenvectors of smallest eigenvalue via the shifted matrix ``sI - L``.

    ``s`` is the largest absolute row sum plus one, which bounds the spectrum.
    """
    n = len(L)
    shift = float(np.max(np.sum(np.abs(L), axis=1))) + 1.0
    current = shift * np.eye(n) - L

    vectors = []
    for _ in range(min(k, n)):
        v = power_iteration(current, rng)
        vectors.append(v)
        current = deflate(current, v, rayleigh_quotient(current, v))
    return vectors


def eigengap_k(L: np.ndarray, max_k: int, rng: DeterministicRandomSource) -> int:
    """Number of clusters at the largest gap of the estimated spectrum, in ``[2, n-1]``."""
    n = len(L)
    if n <= 2:
        return n

    eigenvalues = []
    current = L
    for _ in range(min(max_k + 1, n)):
        v = power_iteration(current, rng, max_iterations=50)
        eigenvalue = rayleigh_quotient(L, v)
        eigenvalues.append(abs(eigenvalue))
        current = deflate(current, v, eigenvalue)
    eigenvalues.sort()

    best_k = 2
    max_gap = 0.0
    for i in range(1, min(len(eigenvalues) - 1, max_k)):
        gap = eigenvalues[i + 1] - eigenvalues[i]
        if gap > max_gap:
            max_gap = gap
            best_k = i + 1
    return max(2, min(best_k, n - 1))


class SpectralClustering(ClusteringEngine):
    """Spectral clustering of the similarity matrix.

    The row-normalized embedding of the smallest Laplacian eigenvectors
    is clustered with scikit-learn's ``KMeans``, seeded from the stream.

    Args:
        n_clusters: Fixed ``k``; ``None`` uses the eigengap heuristic.
        max_k: Upper bound for the eigengap heuristic.
    """

    def __init__(self, n_clusters: Optional[int] = None, max_k: int = 10):
        self.n_clusters = n_clusters
        self.max_k = max_k

    @property
    def method(self) -> ClusteringMethod:
        return ClusteringMethod.SPECTRAL

    def fit_predict(
        self,
        data: ClusteringInput,
        rng: DeterministicRandomSource,
    ) -> np.ndarray:
        S = data.similarity()
        n = len(S)
        if n <= 2:
            return np.arange(n, dtype=np.int64)

        L = normalized_laplacian(S)
        k = self.n_clusters
        if k is None:
            k = eigengap_k(L, min(self.max_k, n - 1), rng)
            logger.debug("Eigengap heuristic selected k=%d", k)
        k = min(max(int(k), 1), n)

        embedding = np.stack(smallest_eigenvectors(L, k, rng), axis=1)
        norms = np.linalg.norm(embedding, axis=1, keepdims=True)
        embedding = np.divide(embedding, norms, out=np.zeros_like(embedding), where=norms > 0)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            kmeans = KMeans(n_clusters=k, n_init=10, random_state=rng.randrange(2**31 - 1))
            labels = kmeans.fit_predict(embedding)
        return normalize_labels(labels)
