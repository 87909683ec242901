"""Client clustering for federated rounds.

This module wires the interchangeable clustering engines together:
- create_clustering_engine: engine for a ClusteringMethod
- ClientClusterer: distance matrix, clustering (or consensus clustering),
  cluster-averaged models and silhouette quality for one round
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from consensus_clustering_fl.config import (
    ClusteringMethod,
    DistanceReference,
    ServerConfig,
)
from consensus_clustering_fl.consensus import ConsensusClusteringEngine
from consensus_clustering_fl.distance import pairwise_distance_matrix
from consensus_clustering_fl.domain.aggregation import ClientUpdate, aggregate_weighted
from consensus_clustering_fl.domain.clustering import (
    ClusteringEngine,
    ClusteringInput,
    labels_to_clusters,
    normalize_labels,
)
from consensus_clustering_fl.domain.errors import MalformedModelError
from consensus_clustering_fl.domain.model import ModelWeights
from consensus_clustering_fl.infrastructure.community import (
    LeidenClustering,
    LouvainClustering,
)
from consensus_clustering_fl.infrastructure.kmeans import KMeansClustering
from consensus_clustering_fl.infrastructure.spectral import SpectralClustering
from consensus_clustering_fl.rng import (
    CLUSTERING_STREAM_OFFSET,
    CONSENSUS_STREAM_OFFSET,
    SPECTRAL_STREAM_OFFSET,
    DeterministicRandomSource,
)

logger = logging.getLogger(__name__)


def create_clustering_engine(
    method: Union[ClusteringMethod, str],
    n_clusters: Optional[int] = None,
    resolution: float = 2.0,
) -> ClusteringEngine:
    """Factory function to create a clustering engine.

    Args:
        method: 'louvain', 'leiden', 'kmeans' or 'spectral'.
        n_clusters: Fixed number of clusters (vector engines); None for automatic.
        resolution: Louvain resolution.

    Returns:
        ClusteringEngine instance
    """
    try:
        method = ClusteringMethod(method)
    except ValueError:
        available = ", ".join(m.value for m in ClusteringMethod)
        raise ValueError(f"Unknown clustering method: {method}. Available: {available}") from None

    if method is ClusteringMethod.LOUVAIN:
        return LouvainClustering(resolution=resolution)
    elif method is ClusteringMethod.LEIDEN:
        return LeidenClustering()
    elif method is ClusteringMethod.KMEANS:
        return KMeansClustering(n_clusters=n_clusters)
    return SpectralClustering(n_clusters=n_clusters)


def stream_offset(method: ClusteringMethod) -> int:
    """Isolated stream offset used by a plain (non-consensus) clustering run."""
    if method is ClusteringMethod.SPECTRAL:
        return SPECTRAL_STREAM_OFFSET
    return CLUSTERING_STREAM_OFFSET


def silhouette_score(D: np.ndarray, labels: Sequence[int]) -> Optional[float]:
    """Mean over clusters of the mean per-node silhouette.

    A node alone in its cluster has ``a = 0`` and scores 1 whenever another
    cluster exists. With a single cluster ``b`` falls back to ``a`` and every
    node scores 0. Returns None only when there are no nodes.
    """
    labels = np.asarray(labels)
    n = len(labels)
    if n == 0:
        return None
    D = np.asarray(D, dtype=np.float64)
    clusters = np.unique(labels)
    masks = labels[None, :] == clusters[:, None]
    sizes = masks.sum(axis=1)

    # Mean distance from every node to every cluster, [n, k]
    to_cluster = (D @ masks.T.astype(np.float64)) / sizes
    own = np.searchsorted(clusters, labels)
    own_size = sizes[own]
    a = np.where(
        own_size > 1,
        to_cluster[np.arange(n), own] * own_size / np.maximum(own_size - 1, 1),
        0.0,
    )
    if len(clusters) > 1:
        others = to_cluster.copy()
        others[np.arange(n), own] = np.inf
        b = others.min(axis=1)
    else:
        b = a
    denom = np.maximum(a, b)
    s = np.divide(b - a, denom, out=np.zeros(n), where=denom > 0)

    cluster_means = [float(np.mean(s[labels == c])) for c in clusters]
    return float(np.mean(cluster_means))


@dataclass
class ClusterModel:
    """Data-weighted average model of one detected community."""

    cluster_id: int
    members: List[str]
    model: ModelWeights
    data_size: int


@dataclass
class ClusteringResult:
    """Outcome of clustering the models collected in one round."""

    client_ids: List[str] = field(default_factory=list)
    distance_matrix: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    labels: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    clusters: List[List[str]] = field(default_factory=list)
    agreement_matrix: Optional[np.ndarray] = None
    silhouette: Optional[float] = None
    cluster_models: List[ClusterModel] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def models_by_client(self) -> Dict[str, ModelWeights]:
        """ClusterModelStore content: each member mapped to its cluster model."""
        store: Dict[str, ModelWeights] = {}
        for cluster in self.cluster_models:
            for client_id in cluster.members:
                store[client_id] = cluster.model
        return store


class ClientClusterer:
    """Groups client models by similarity.

    Uses a plain clustering engine, or the consensus engine when enabled.
    Every randomized step draws from an isolated stream derived from the
    experiment seed; the main stream is never touched.
    """

    def __init__(
        self,
        config: ServerConfig,
        engine: Optional[ClusteringEngine] = None,
        consensus: Optional[ConsensusClusteringEngine] = None,
    ):
        self.config = config
        self.engine = engine or create_clustering_engine(
            config.clustering_method,
            n_clusters=config.n_clusters,
            resolution=config.louvain_resolution,
        )
        if consensus is None and config.use_consensus:
            consensus = ConsensusClusteringEngine(
                method=config.clustering_method,
                num_runs=config.consensus_runs,
                min_resolution=config.consensus_min_resolution,
                max_resolution=config.consensus_max_resolution,
                threshold=config.consensus_threshold,
            )
        self.consensus = consensus

    def cluster_clients(
        self,
        updates: Sequence[ClientUpdate],
        global_model: ModelWeights,
        seed: int,
    ) -> ClusteringResult:
        """Cluster the collected client models.

        Args:
            updates: Collected client models, in collection order.
            global_model: Defines the expected architecture and, with a
                ``global`` distance reference, the reference vector.
            seed: Experiment seed used to derive isolated streams.

        Returns:
            ClusteringResult; clients with malformed weights are listed in
            ``skipped`` and excluded.
        """
        valid: List[ClientUpdate] = []
        skipped: List[str] = []
        for update in updates:
            try:
                update.weights.validate(global_model.shapes)
            except MalformedModelError as e:
                logger.warning("Skipping malformed model from %s: %s", update.client_id, e)
                skipped.append(update.client_id)
                continue
            valid.append(update)

        result = ClusteringResult(skipped=skipped)
        if not valid:
            return result

        ids = [u.client_id for u in valid]
        vectors = np.stack([u.weights.vectorize() for u in valid])
        reference = None
        if self.config.distance_reference is DistanceReference.GLOBAL:
            reference = global_model.vectorize()

        D = pairwise_distance_matrix(vectors, self.config.distance_metric, reference)
        base = DeterministicRandomSource(seed)

        if self.consensus is not None:
            consensus = self.consensus.cluster(D, ids, base.derive(CONSENSUS_STREAM_OFFSET))
            labels = np.zeros(len(ids), dtype=np.int64)
            for cluster_id, members in enumerate(consensus.cluster_indices):
                labels[members] = cluster_id
            result.agreement_matrix = consensus.agreement_matrix
        else:
            data = ClusteringInput(
                distance_matrix=D,
                vectors=vectors,
                metric=self.config.distance_metric,
                reference=reference,
            )
            rng = base.derive(stream_offset(self.engine.method))
            labels = self.engine.fit_predict(data, rng)

        labels = normalize_labels(labels)
        result.client_ids = ids
        result.distance_matrix = D
        result.labels = labels
        result.clusters = labels_to_clusters(labels, ids)
        result.silhouette = silhouette_score(D, labels)
        result.cluster_models = self._cluster_models(valid, labels)

        logger.info(
            "Clustered %d clients into %d clusters (%s%s)",
            len(ids),
            len(result.clusters),
            self.engine.name,
            ", consensus" if self.consensus is not None else "",
        )
        return result

    @staticmethod
    def _cluster_models(
        updates: Sequence[ClientUpdate],
        labels: np.ndarray,
    ) -> List[ClusterModel]:
        """Average models within each cluster, weighted by client data size.

        The cluster model keeps the version of its first member's model.
        """
        cluster_models = []
        for cluster_id in range(int(labels.max()) + 1 if len(labels) else 0):
            members = [u for u, label in zip(updates, labels) if label == cluster_id]
            if not members:
                continue
            model = aggregate_weighted(
                [m.weights for m in members],
                [m.data_size for m in members],
                version=members[0].weights.version,
            )
            cluster_models.append(
                ClusterModel(
                    cluster_id=cluster_id,
                    members=[m.client_id for m in members],
                    model=model,
                    data_size=sum(m.data_size for m in members),
                )
            )
        return cluster_models
