"""Per-experiment mutable state shared by the round phases."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from consensus_clustering_fl.domain.dataset import DataPartition
from consensus_clustering_fl.domain.model import ModelWeights
from consensus_clustering_fl.rng import DeterministicRandomSource


@dataclass
class SimulationContext:
    """State owned by one experiment.

    Attributes:
        seed: Experiment seed (isolated streams are derived from it).
        rng: The main stream.
        cluster_model_store: Client id to the model of the cluster it was
            placed in during the last clustering phase.
        previous_clusters: Client ids per cluster from the last round.
        partitions: Loaded client data, keyed by client id.
    """

    seed: int = 42
    rng: DeterministicRandomSource = field(default=None)
    cluster_model_store: Dict[str, ModelWeights] = field(default_factory=dict)
    previous_clusters: List[List[str]] = field(default_factory=list)
    partitions: Dict[str, DataPartition] = field(default_factory=dict)

    def __post_init__(self):
        if self.rng is None:
            self.rng = DeterministicRandomSource(self.seed)

    def reset(self, seed: Optional[int] = None) -> None:
        """Start over: fresh main stream, empty store and cluster history.

        Loaded partitions are kept only when the seed does not change.
        """
        if seed is not None and seed != self.seed:
            self.seed = seed
            self.partitions.clear()
        self.rng = DeterministicRandomSource(self.seed)
        self.cluster_model_store.clear()
        self.previous_clusters = []

    def replace_cluster_models(self, models: Dict[str, ModelWeights]) -> None:
        """Clear the store and fill it with this round's cluster models."""
        self.cluster_model_store.clear()
        self.cluster_model_store.update(models)
