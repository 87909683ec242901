"""Serializable experiment state."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from consensus_clustering_fl.config import ServerConfig
from consensus_clustering_fl.domain.metrics import RoundMetrics
from consensus_clustering_fl.domain.model import ModelWeights


@dataclass
class ExperimentSnapshot:
    """Everything needed to inspect or resume an experiment.

    Attributes:
        config: Server configuration of the run.
        current_round: Last completed round.
        global_model: Global model after ``current_round``.
        history: Metrics of every completed round.
        client_models: Last locally trained model per client.
        client_data_sizes: Training set size per client.
        cluster_models: ClusterModelStore content.
        previous_clusters: Clusters of the last round.
        rng_state: Position of the main stream.
    """

    config: ServerConfig
    current_round: int
    global_model: Optional[ModelWeights]
    history: List[RoundMetrics] = field(default_factory=list)
    client_models: Dict[str, ModelWeights] = field(default_factory=dict)
    client_data_sizes: Dict[str, int] = field(default_factory=dict)
    cluster_models: Dict[str, ModelWeights] = field(default_factory=dict)
    previous_clusters: List[List[str]] = field(default_factory=list)
    rng_state: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Plain-Python form (JSON-compatible)."""
        return {
            "config": self.config.to_dict(),
            "current_round": self.current_round,
            "global_model": self.global_model.to_dict() if self.global_model else None,
            "history": [m.to_dict() for m in self.history],
            "client_models": {cid: w.to_dict() for cid, w in self.client_models.items()},
            "client_data_sizes": dict(self.client_data_sizes),
            "cluster_models": {cid: w.to_dict() for cid, w in self.cluster_models.items()},
            "previous_clusters": [list(c) for c in self.previous_clusters],
            "rng_state": self.rng_state,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExperimentSnapshot":
        global_model = data.get("global_model")
        return cls(
            config=ServerConfig.from_dict(data["config"]),
            current_round=int(data["current_round"]),
            global_model=ModelWeights.from_dict(global_model) if global_model else None,
            history=[RoundMetrics.from_dict(m) for m in data.get("history", [])],
            client_models={
                cid: ModelWeights.from_dict(w) for cid, w in data.get("client_models", {}).items()
            },
            client_data_sizes={
                cid: int(size) for cid, size in data.get("client_data_sizes", {}).items()
            },
            cluster_models={
                cid: ModelWeights.from_dict(w) for cid, w in data.get("cluster_models", {}).items()
            },
            previous_clusters=[list(c) for c in data.get("previous_clusters", [])],
            rng_state=data.get("rng_state"),
        )
