"""Domain clustering abstraction shared by all partitioning algorithms."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Sequence

import numpy as np

from consensus_clustering_fl.config import ClusteringMethod, DistanceMetric
from consensus_clustering_fl.distance import distances_to_adjacency
from consensus_clustering_fl.rng import DeterministicRandomSource


@dataclass
class ClusteringInput:
    """What a clustering engine may look at.

    Graph engines read :meth:`similarity`; vector engines read ``vectors``
    with ``metric``.

    Attributes:
        distance_matrix: Symmetric pairwise distances, zero diagonal.
        vectors: Flattened models, ``[n, dim]`` (optional for graph engines).
        metric: Metric used for ``distance_matrix`` and vector distances.
        adjacency: Precomputed similarity matrix; derived from the distances
            when omitted.
        reference: Vector subtracted from ``vectors`` before distances.
    """

    distance_matrix: np.ndarray
    vectors: Optional[np.ndarray] = None
    metric: DistanceMetric = DistanceMetric.COSINE
    adjacency: Optional[np.ndarray] = None
    reference: Optional[np.ndarray] = None

    @property
    def n(self) -> int:
        return len(self.distance_matrix)

    def similarity(self) -> np.ndarray:
        if self.adjacency is None:
            self.adjacency = distances_to_adjacency(self.distance_matrix)
        return self.adjacency

    @classmethod
    def from_similarity(cls, similarity: np.ndarray) -> "ClusteringInput":
        """Input for graph engines when only a similarity matrix is known."""
        similarity = np.asarray(similarity, dtype=np.float64)
        return cls(distance_matrix=np.zeros_like(similarity), adjacency=similarity)


def normalize_labels(labels: Sequence[Hashable]) -> np.ndarray:
    """Relabel communities ``0..k-1`` in order of first appearance."""
    mapping: Dict[Hashable, int] = {}
    out = np.empty(len(labels), dtype=np.int64)
    for i, label in enumerate(labels):
        if label not in mapping:
            mapping[label] = len(mapping)
        out[i] = mapping[label]
    return out


def labels_to_clusters(labels: Sequence[int], ids: Sequence[str]) -> List[List[str]]:
    """Group ``ids`` by label, clusters ordered by first appearance."""
    groups: Dict[int, List[str]] = {}
    for label, node_id in zip(labels, ids):
        groups.setdefault(int(label), []).append(node_id)
    return list(groups.values())


def clusters_to_labels(clusters: Sequence[Sequence[int]], n: int) -> np.ndarray:
    """Inverse of grouping: cluster index per node (nodes must be covered once)."""
    labels = np.full(n, -1, dtype=np.int64)
    for cluster_id, members in enumerate(clusters):
        for node in members:
            labels[node] = cluster_id
    if np.any(labels < 0):
        raise ValueError("Clusters do not cover every node")
    return labels


class ClusteringEngine(ABC):
    """Partitions ``n`` nodes into communities labelled ``0..k-1``."""

    @property
    @abstractmethod
    def method(self) -> ClusteringMethod:
        """Return the clustering method this engine implements."""
        pass

    @abstractmethod
    def fit_predict(
        self,
        data: ClusteringInput,
        rng: DeterministicRandomSource,
    ) -> np.ndarray:
        """Cluster the nodes described by ``data``.

        Args:
            data: Distances, vectors and/or similarity matrix.
            rng: Stream consumed by every randomized step.

        Returns:
            Contiguous community label per node.
        """
        pass

    @property
    def name(self) -> str:
        return self.method.value
