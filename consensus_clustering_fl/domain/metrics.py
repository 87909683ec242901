"""Per-round metrics emitted by the orchestrator."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from consensus_clustering_fl.domain.model import ModelWeights


@dataclass
class ClientRoundMetrics:
    """Local training outcome of one client in one round."""

    client_id: str
    loss: float
    accuracy: float
    test_accuracy: float
    gradient_norm: float
    data_size: int
    epochs: int


@dataclass
class ClusterMetrics:
    """Accuracy of a cluster model on its members' pooled test data."""

    cluster_id: int
    members: List[str]
    accuracy: float


@dataclass
class WeightsSnapshot:
    """Summary statistics of the global model after aggregation."""

    w1_mean: float = 0.0
    w1_std: float = 0.0
    w2_mean: float = 0.0
    w2_std: float = 0.0
    b1_mean: float = 0.0
    b2_mean: float = 0.0

    @classmethod
    def from_weights(cls, weights: ModelWeights) -> "WeightsSnapshot":
        layers = list(weights.layers)
        biases = weights.layer_biases()
        snapshot = cls()
        if layers:
            snapshot.w1_mean = float(np.mean(layers[0]))
            snapshot.w1_std = float(np.std(layers[0]))
            snapshot.b1_mean = float(np.mean(biases[0])) if biases[0].size else 0.0
        if len(layers) > 1:
            snapshot.w2_mean = float(np.mean(layers[1]))
            snapshot.w2_std = float(np.std(layers[1]))
            snapshot.b2_mean = float(np.mean(biases[1])) if biases[1].size else 0.0
        return snapshot


@dataclass
class RoundMetrics:
    """Everything recorded about one completed round.

    Clustering fields are empty / ``None`` when the cluster phase failed.
    """

    round: int
    global_loss: float
    global_accuracy: float
    participating_clients: List[str]
    distance_matrix: List[List[float]] = field(default_factory=list)
    clusters: List[List[str]] = field(default_factory=list)
    agreement_matrix: Optional[List[List[int]]] = None
    silhouette_avg: Optional[float] = None
    cluster_metrics: List[ClusterMetrics] = field(default_factory=list)
    client_metrics: List[ClientRoundMetrics] = field(default_factory=list)
    aggregation_time: float = 0.0
    timestamp: float = 0.0
    weights_snapshot: Optional[WeightsSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundMetrics":
        data = dict(data)
        data["cluster_metrics"] = [ClusterMetrics(**c) for c in data.get("cluster_metrics", [])]
        data["client_metrics"] = [
            ClientRoundMetrics(**c) for c in data.get("client_metrics", [])
        ]
        if data.get("weights_snapshot") is not None:
            data["weights_snapshot"] = WeightsSnapshot(**data["weights_snapshot"])
        return cls(**data)

    def reproducible_fields(self) -> Dict[str, Any]:
        """Fields that must match bit-for-bit across reruns (wall-clock data excluded)."""
        data = self.to_dict()
        data.pop("aggregation_time")
        data.pop("timestamp")
        return data
