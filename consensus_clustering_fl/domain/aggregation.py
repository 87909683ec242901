"""Domain aggregation utilities and strategy interfaces."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from consensus_clustering_fl.domain.errors import AggregationError
from consensus_clustering_fl.domain.model import ModelWeights


def aggregate_weighted(
    models: Sequence[ModelWeights],
    weights: Sequence[float],
    version: int = 0,
) -> ModelWeights:
    """Aggregate models using weighted averaging.

    Args:
        models: Models from different clients (same architecture).
        weights: Weight for each model (typically data size).
        version: Version stamped on the result.

    Returns:
        Weighted parameter average.
    """
    if not models:
        raise AggregationError("Cannot aggregate empty model list")

    # Normalize weights
    total_weight = float(sum(weights))
    if total_weight <= 0:
        normalized_weights = [1.0 / len(models)] * len(models)
    else:
        normalized_weights = [w / total_weight for w in weights]

    aggregated = np.zeros(models[0].dimension)
    for model, weight in zip(models, normalized_weights):
        aggregated += model.vectorize() * weight

    return ModelWeights.from_vector(aggregated, models[0].shapes, version=version)


def blend_models(
    received: ModelWeights,
    previous: ModelWeights,
    weight: float,
) -> ModelWeights:
    """Return ``weight * received + (1 - weight) * previous``.

    The result keeps the received model's version.
    """
    vector = weight * received.vectorize() + (1.0 - weight) * previous.vectorize()
    return ModelWeights.from_vector(vector, received.shapes, version=received.version)


@dataclass(frozen=True)
class ClientUpdate:
    """A trained model submitted by a client at the end of local training."""

    client_id: str
    weights: ModelWeights
    data_size: int


class AggregationStrategy(ABC):
    """Abstract base class for server-side aggregation strategies.

    This allows implementing different aggregation methods like
    FedAvg, FedProx, coordinate-wise median, etc.
    """

    def aggregate(self, updates: Sequence[ClientUpdate]) -> ModelWeights:
        """Aggregate client updates into a new global model.

        Args:
            updates: Client models with their data sizes.

        Returns:
            New global model, versioned ``max(input versions) + 1``.

        Raises:
            AggregationError: If ``updates`` is empty.
        """
        if not updates:
            raise AggregationError(f"{self.name}: no client updates to aggregate")
        version = max(u.weights.version for u in updates) + 1
        vector = self._combine(
            np.stack([u.weights.vectorize() for u in updates]),
            np.array([u.data_size for u in updates], dtype=np.float64),
        )
        return ModelWeights.from_vector(vector, updates[0].weights.shapes, version=version)

    @abstractmethod
    def _combine(self, vectors: np.ndarray, data_sizes: np.ndarray) -> np.ndarray:
        """Combine a ``[num_clients, dim]`` stack into one ``[dim]`` vector."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the strategy name."""
        pass


@dataclass
class ClientAggregationContext:
    """What a client knows when it blends a received model.

    Attributes:
        client_id: The blending client.
        server_round: Current round (1-based).
        global_model: Current server model, if available.
        gradient_norm_history: Most recent first.
        local_model_history: Most recent first.
        received_model_history: Most recent first.
    """

    client_id: str
    server_round: int
    global_model: Optional[ModelWeights] = None
    gradient_norm_history: List[float] = field(default_factory=list)
    local_model_history: List[ModelWeights] = field(default_factory=list)
    received_model_history: List[ModelWeights] = field(default_factory=list)


class ClientAggregationStrategy(ABC):
    """How a client merges the model it receives with its previous local model."""

    @abstractmethod
    def blend(
        self,
        received: ModelWeights,
        previous: Optional[ModelWeights],
        context: ClientAggregationContext,
    ) -> ModelWeights:
        """Produce the model the client starts local training from.

        Args:
            received: Model sent by the server this round.
            previous: Client's last locally trained model, if any.
            context: Client and round information.

        Returns:
            Starting model for local training.
        """
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the strategy name."""
        pass
