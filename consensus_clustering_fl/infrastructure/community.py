"""Infrastructure: Modularity-based community detection (Louvain, Leiden)."""

import logging
from typing import Dict, List, Optional

import numpy as np

from consensus_clustering_fl.config import ClusteringMethod
from consensus_clustering_fl.domain.clustering import (
    ClusteringEngine,
    ClusteringInput,
    normalize_labels,
)
from consensus_clustering_fl.rng import DeterministicRandomSource

logger = logging.getLogger(__name__)


def _degrees(A: np.ndarray) -> tuple[np.ndarray, float]:
    """Node strengths and total edge weight ``m`` (each edge counted once)."""
    k = A.sum(axis=1)
    return k, float(k.sum()) / 2.0


def modularity(A: np.ndarray, labels: np.ndarray, resolution: float = 1.0) -> float:
    """Newman modularity of a partition with a resolution parameter."""
    A = np.asarray(A, dtype=np.float64)
    if len(A) == 0:
        return 0.0
    k, m = _degrees(A)
    if m == 0:
        return 0.0
    labels = np.asarray(labels)
    same = labels[:, None] == labels[None, :]
    expected = resolution * np.outer(k, k) / (2.0 * m)
    return float(np.sum((A - expected)[same]) / (2.0 * m))


def refine_partition(A: np.ndarray, labels: np.ndarray) -> np.ndarray:
    """Move nodes whose strongest edge points to a better-connected community.

    For each node (in index order), find the community of its single
    strongest neighbour; if the node's total weight towards that community
    exceeds its weight towards its own, move it there. A node whose
    strongest edge is below the mean off-diagonal weight is left alone, so
    an outlier on a dense kernel graph keeps its own community.
    """
    A = np.asarray(A, dtype=np.float64)
    n = len(A)
    partition = list(int(c) for c in labels)
    if n < 2:
        return normalize_labels(partition)
    members: Dict[int, List[int]] = {}
    for i, c in enumerate(partition):
        members.setdefault(c, []).append(i)

    min_tie = float(A[~np.eye(n, dtype=bool)].mean())

    for i in range(n):
        current = partition[i]
        best_c = current
        best_weight = 0.0
        for j in range(n):
            if i == j:
                continue
            if A[i, j] > best_weight:
                best_weight = A[i, j]
                best_c = partition[j]

        if best_c == current or best_weight < min_tie:
            continue

        internal = sum(A[i, v] for v in members.get(current, []))
        candidate = sum(A[i, v] for v in members.get(best_c, []))
        if candidate > internal:
            partition[i] = best_c
            members[current].remove(i)
            members.setdefault(best_c, []).append(i)

    return normalize_labels(partition)


class LouvainClustering(ClusteringEngine):
    """Louvain local-move modularity optimization on a similarity graph.

    Lower ``resolution`` favours larger communities. Nodes are visited in
    an order shuffled from the supplied stream on every pass.
    """

    def __init__(
        self,
        resolution: float = 2.0,
        max_passes: int = 10,
        refine: bool = True,
    ):
        self.resolution = resolution
        self.max_passes = max_passes
        self.refine = refine

    @property
    def method(self) -> ClusteringMethod:
        return ClusteringMethod.LOUVAIN

    def fit_predict(
        self,
        data: ClusteringInput,
        rng: DeterministicRandomSource,
    ) -> np.ndarray:
        A = data.similarity()
        labels = self.partition(A, rng)
        if self.refine and len(labels) > 0:
            labels = refine_partition(A, labels)
        return labels

    def partition(
        self,
        A: np.ndarray,
        rng: DeterministicRandomSource,
        resolution: Optional[float] = None,
    ) -> np.ndarray:
        """Local-move phase only.

        Args:
            A: Symmetric non-negative similarity matrix, zero diagonal.
            rng: Stream used for node visiting order.
            resolution: Overrides the engine resolution for this call.

        Returns:
            Contiguous labels; singletons when the graph has no edges.
        """
        A = np.asarray(A, dtype=np.float64)
        n = len(A)
        if n == 0:
            return np.zeros(0, dtype=np.int64)
        gamma = self.resolution if resolution is None else resolution

        k, m = _degrees(A)
        if m == 0:
            return np.arange(n, dtype=np.int64)

        community = list(range(n))
        sum_tot = k.copy()
        two_m = 2.0 * m

        improvement = True
        passes = 0
        while improvement and passes < self.max_passes:
            improvement = False
            passes += 1

            for i in rng.permutation(n):
                old_c = community[i]

                # Weight from i to each neighbouring community, in neighbour order
                neighbour_weights: Dict[int, float] = {}
                for j in range(n):
                    if A[i, j] <= 0:
                        continue
                    c = community[j]
                    neighbour_weights[c] = neighbour_weights.get(c, 0.0) + A[i, j]

                sum_tot[old_c] -= k[i]

                best_c = old_c
                best_delta = 0.0
                for c, k_i_in in neighbour_weights.items():
                    delta_q = (k_i_in - gamma * k[i] * sum_tot[c] / two_m) / two_m
                    if delta_q > best_delta:
                        best_delta = delta_q
                        best_c = c

                community[i] = best_c
                sum_tot[best_c] += k[i]
                if best_c != old_c:
                    improvement = True

        return normalize_labels(community)


class LeidenClustering(ClusteringEngine):
    """Leiden-style community detection.

    Iterates fast local moves, a split refinement of weakly connected
    communities, and relabelling until modularity changes by less than
    ``tolerance`` or ``max_iterations`` is reached.
    """

    def __init__(
        self,
        resolution: float = 1.0,
        max_iterations: int = 10,
        max_local_sweeps: int = 100,
        split_threshold: float = 0.1,
        tolerance: float = 1e-6,
    ):
        self.resolution = resolution
        self.max_iterations = max_iterations
        self.max_local_sweeps = max_local_sweeps
        self.split_threshold = split_threshold
        self.tolerance = tolerance

    @property
    def method(self) -> ClusteringMethod:
        return ClusteringMethod.LEIDEN

    def fit_predict(
        self,
        data: ClusteringInput,
        rng: DeterministicRandomSource,
    ) -> np.ndarray:
        return self.partition(data.similarity(), rng)

    def partition(
        self,
        A: np.ndarray,
        rng: DeterministicRandomSource,
        resolution: Optional[float] = None,
    ) -> np.ndarray:
        A = np.asarray(A, dtype=np.float64)
        n = len(A)
        if n == 0:
            return np.zeros(0, dtype=np.int64)
        gamma = self.resolution if resolution is None else resolution

        k, m = _degrees(A)
        partition = np.arange(n, dtype=np.int64)
        if m == 0:
            return partition

        previous = modularity(A, partition, gamma)
        for iteration in range(self.max_iterations):
            partition = self._fast_local_move(A, partition, k, m, gamma, rng)
            partition = self._refine(A, partition, rng)
            partition = normalize_labels(partition)

            current = modularity(A, partition, gamma)
            if abs(current - previous) < self.tolerance:
                logger.debug("Leiden converged after %d iterations", iteration + 1)
                break
            previous = current

        return normalize_labels(partition)

    def _fast_local_move(
        self,
        A: np.ndarray,
        partition: np.ndarray,
        k: np.ndarray,
        m: float,
        gamma: float,
        rng: DeterministicRandomSource,
    ) -> np.ndarray:
        n = len(A)
        partition = partition.copy()
        improved = True
        sweeps = 0

        while improved and sweeps < self.max_local_sweeps:
            improved = False
            sweeps += 1

            for i in rng.permutation(n):
                current = partition[i]
                # Ordered set of neighbouring communities
                neighbours = dict.fromkeys(int(partition[j]) for j in range(n) if A[i, j] > 0)

                in_current = partition == current
                w_current = float(A[i, in_current].sum())
                k_current = float(k[in_current].sum())

                best_c = current
                best_gain = 0.0
                for target in neighbours:
                    if target == current:
                        continue
                    in_target = partition == target
                    w_target = float(A[i, in_target].sum())
                    k_target = float(k[in_target].sum())
                    gain = (w_target - w_current) / m - gamma * k[i] * (
                        k_target - k_current + k[i]
                    ) / (2.0 * m * m)
                    if gain > best_gain:
                        best_gain = gain
                        best_c = target

                if best_c != current and best_gain > 1e-10:
                    partition[i] = best_c
                    improved = True

        return partition

    def _refine(
        self,
        A: np.ndarray,
        partition: np.ndarray,
        rng: DeterministicRandomSource,
    ) -> np.ndarray:
        """Randomly split communities whose mean internal edge weight is low."""
        communities: Dict[int, List[int]] = {}
        for i, c in enumerate(partition):
            communities.setdefault(int(c), []).append(i)

        refined = partition.copy()
        next_id = int(partition.max()) + 1
        for nodes in communities.values():
            size = len(nodes)
            if size <= 2:
                continue
            sub = A[np.ix_(nodes, nodes)]
            total = float(np.triu(sub, k=1).sum())
            avg_weight = total / (size * (size - 1) / 2)
            if avg_weight < self.split_threshold:
                for node in nodes:
                    if rng.random() > 0.5:
                        refined[node] = next_id
                next_id += 1
        return refined
