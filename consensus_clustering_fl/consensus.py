"""Consensus clustering through a co-membership (agreement) matrix.

The chosen graph algorithm is rerun ``num_runs`` times while the resolution
is swept linearly from ``min_resolution`` to ``max_resolution``. Pairs of
clients that share a community in at least ``threshold`` of the runs end up
connected; the final clusters are the connected components of that graph.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import List, Sequence, Union

import numpy as np

from consensus_clustering_fl.config import ClusteringMethod
from consensus_clustering_fl.distance import distances_to_adjacency
from consensus_clustering_fl.infrastructure.community import (
    LeidenClustering,
    LouvainClustering,
)
from consensus_clustering_fl.rng import DeterministicRandomSource

logger = logging.getLogger(__name__)


@dataclass
class ConsensusResult:
    """Agreement counts and the clusters extracted from them."""

    agreement_matrix: np.ndarray
    clusters: List[List[str]]
    cluster_indices: List[List[int]]


def extract_clusters(
    agreement: np.ndarray,
    num_runs: int,
    threshold: float = 0.6,
) -> List[List[int]]:
    """Connected components over pairs with ``agreement >= num_runs * threshold``.

    Components are discovered by breadth-first search from the lowest
    unvisited index, so the output order is deterministic.
    """
    agreement = np.asarray(agreement)
    n = len(agreement)
    cutoff = num_runs * threshold
    visited = [False] * n
    clusters: List[List[int]] = []

    for start in range(n):
        if visited[start]:
            continue
        visited[start] = True
        queue = deque([start])
        cluster = []
        while queue:
            node = queue.popleft()
            cluster.append(node)
            for j in range(n):
                if not visited[j] and agreement[node, j] >= cutoff:
                    visited[j] = True
                    queue.append(j)
        clusters.append(cluster)

    return clusters


class ConsensusClusteringEngine:
    """Stabilizes graph clustering by voting across resolutions.

    Args:
        method: ``louvain`` or ``leiden``; any other method uses Leiden.
        num_runs: Number of clustering runs.
        min_resolution: Resolution of the first run.
        max_resolution: Resolution of the last run.
        threshold: Fraction of runs two clients must agree on.
    """

    def __init__(
        self,
        method: Union[ClusteringMethod, str] = ClusteringMethod.LEIDEN,
        num_runs: int = 20,
        min_resolution: float = 0.5,
        max_resolution: float = 2.5,
        threshold: float = 0.6,
    ):
        method = ClusteringMethod(method)
        if not method.is_graph_based:
            logger.info("Consensus clustering does not support %s; using leiden", method.value)
            method = ClusteringMethod.LEIDEN
        if num_runs < 1:
            raise ValueError("num_runs must be positive")
        self.method = method
        self.num_runs = num_runs
        self.min_resolution = min_resolution
        self.max_resolution = max_resolution
        self.threshold = threshold

        if method is ClusteringMethod.LOUVAIN:
            self._engine = LouvainClustering(refine=False)
        else:
            self._engine = LeidenClustering()

    def resolutions(self) -> np.ndarray:
        """Resolution used by each run."""
        if self.num_runs == 1:
            return np.array([self.min_resolution])
        return np.array(
            [
                self.min_resolution
                + (self.max_resolution - self.min_resolution) * run / (self.num_runs - 1)
                for run in range(self.num_runs)
            ]
        )

    def build_agreement(
        self,
        D: np.ndarray,
        rng: DeterministicRandomSource,
    ) -> np.ndarray:
        """Count, for every pair, the runs that put both nodes in one community.

        Args:
            D: Distance matrix.
            rng: Isolated stream shared by all runs (never the main stream).

        Returns:
            Integer ``[n, n]`` matrix with entries in ``[0, num_runs]`` and a
            diagonal equal to ``num_runs``.
        """
        D = np.asarray(D, dtype=np.float64)
        n = len(D)
        agreement = np.zeros((n, n), dtype=np.int64)
        if n == 0:
            return agreement

        A = distances_to_adjacency(D)
        logger.debug(
            "Building agreement matrix: %d %s runs on stream seed %d",
            self.num_runs,
            self.method.value,
            rng.seed,
        )
        for resolution in self.resolutions():
            labels = self._engine.partition(A, rng, resolution=float(resolution))
            agreement += (labels[:, None] == labels[None, :]).astype(np.int64)
        return agreement

    def cluster(
        self,
        D: np.ndarray,
        client_ids: Sequence[str],
        rng: DeterministicRandomSource,
    ) -> ConsensusResult:
        """Agreement matrix plus the thresholded clusters of ``client_ids``."""
        agreement = self.build_agreement(D, rng)
        indices = extract_clusters(agreement, self.num_runs, self.threshold)
        clusters = [
            [client_ids[i] if i < len(client_ids) else f"client-{i}" for i in group]
            for group in indices
        ]
        logger.info(
            "Consensus clustering (%s, %d runs) found %d clusters",
            self.method.value,
            self.num_runs,
            len(clusters),
        )
        return ConsensusResult(agreement_matrix=agreement, clusters=clusters, cluster_indices=indices)
