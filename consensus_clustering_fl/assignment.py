"""Model assignment: which model each selected client receives.

- OneNNAssignment: the cluster model stored for the client, else the global model
- ProbabilisticAssignment: early rounds sample a cluster with probability
  decreasing in distance, later rounds behave like 1NN
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from consensus_clustering_fl.config import AssignmentMethod, DistanceMetric, ServerConfig
from consensus_clustering_fl.context import SimulationContext
from consensus_clustering_fl.distance import compute_distance
from consensus_clustering_fl.domain.client import ClientRecord
from consensus_clustering_fl.domain.model import ModelWeights
from consensus_clustering_fl.rng import DeterministicRandomSource

logger = logging.getLogger(__name__)

ZERO_DISTANCE_EPSILON = 1e-3


def distances_to_probabilities(distances: Sequence[float]) -> np.ndarray:
    """Turn cluster distances into a probability vector.

    Clusters within ``ZERO_DISTANCE_EPSILON`` of zero share all the mass.
    Otherwise ``p_c = max(0, 1 - d_c / sum(d))`` renormalized; infinite
    distances (empty clusters) and degenerate totals fall back to uniform.
    """
    d = np.asarray(distances, dtype=np.float64)
    count = len(d)
    if count == 0:
        return np.zeros(0)
    finite = np.isfinite(d)

    zero = finite & (np.abs(d) < ZERO_DISTANCE_EPSILON)
    if zero.any():
        return zero / zero.sum()

    total = float(d[finite].sum())
    if total == 0:
        probs = np.full(count, 1.0 / count)
    else:
        probs = np.where(finite, 1.0 - d / total, 1.0 / count)
    probs = np.maximum(probs, 0.0)
    mass = probs.sum()
    if mass > 0:
        return probs / mass
    return np.full(count, 1.0 / count)


def sample_index(probabilities: Sequence[float], rng: DeterministicRandomSource) -> int:
    """Cumulative-probability draw; consumes exactly one value from ``rng``."""
    r = rng.random()
    acc = 0.0
    for i, p in enumerate(probabilities):
        acc += p
        if r <= acc:
            return i
    return 0


class ModelAssignmentStrategy(ABC):
    """Decides the model sent to each participant of a round."""

    @abstractmethod
    def assign_round(
        self,
        clients: Sequence[ClientRecord],
        global_model: ModelWeights,
        context: SimulationContext,
        server_round: int,
    ) -> Dict[str, ModelWeights]:
        """Pick a model for every client in ``clients``.

        Args:
            clients: Selected participants, in selection order.
            global_model: Current global model.
            context: Holds the ClusterModelStore and last round's clusters.
            server_round: Current round (1-based).

        Returns:
            Mapping client id to the model it receives.
        """
        pass

    @property
    @abstractmethod
    def method(self) -> AssignmentMethod:
        pass


class OneNNAssignment(ModelAssignmentStrategy):
    """Send each client the model of the cluster it belonged to."""

    @property
    def method(self) -> AssignmentMethod:
        return AssignmentMethod.ONE_NN

    def assign_round(self, clients, global_model, context, server_round):
        return {
            c.client_id: context.cluster_model_store.get(c.client_id, global_model)
            for c in clients
        }


class ProbabilisticAssignment(ModelAssignmentStrategy):
    """Sample a cluster model per client, favouring nearby clusters.

    A client's position is its stored cluster model (or the global model);
    its distance to a cluster is the mean distance to the members' stored
    models. One value is drawn from the main stream per selected client,
    in selection order. Rounds after ``max_round`` fall back to 1NN.
    """

    def __init__(
        self,
        metric: Union[DistanceMetric, str] = DistanceMetric.COSINE,
        max_round: int = 5,
    ):
        self.metric = DistanceMetric(metric)
        self.max_round = max_round
        self._fallback = OneNNAssignment()

    @property
    def method(self) -> AssignmentMethod:
        return AssignmentMethod.PROBABILISTIC

    def assign_round(self, clients, global_model, context, server_round):
        clusters = context.previous_clusters
        if server_round > self.max_round:
            return self._fallback.assign_round(clients, global_model, context, server_round)
        if not clusters:
            return {c.client_id: global_model for c in clients}

        store = context.cluster_model_store
        cluster_models = [store.get(group[0], global_model) if group else global_model for group in clusters]
        member_vectors = [
            [store.get(cid, global_model).vectorize() for cid in group] for group in clusters
        ]

        assignments: Dict[str, ModelWeights] = {}
        for client in clients:
            client_vec = store.get(client.client_id, global_model).vectorize()
            distances = self._cluster_distances(client_vec, member_vectors)
            probabilities = distances_to_probabilities(distances)
            chosen = sample_index(probabilities, context.rng)
            logger.debug(
                "Round %d: %s sampled cluster %d (p=%s)",
                server_round,
                client.client_id,
                chosen,
                np.round(probabilities, 3).tolist(),
            )
            assignments[client.client_id] = cluster_models[chosen]
        return assignments

    def _cluster_distances(
        self,
        client_vec: np.ndarray,
        member_vectors: List[List[np.ndarray]],
    ) -> List[float]:
        distances = []
        for vectors in member_vectors:
            if not vectors:
                distances.append(float("inf"))
                continue
            distances.append(
                float(np.mean([compute_distance(client_vec, v, self.metric) for v in vectors]))
            )
        return distances


class GlobalModelAssignment(ModelAssignmentStrategy):
    """Always send the global model."""

    @property
    def method(self) -> Optional[AssignmentMethod]:
        return None

    def assign_round(self, clients, global_model, context, server_round):
        return {c.client_id: global_model for c in clients}


def create_assignment_strategy(config: ServerConfig) -> ModelAssignmentStrategy:
    """Assignment strategy for ``config.assignment_method``; unknown methods send the global model."""
    method = config.assignment_method
    if method is AssignmentMethod.ONE_NN:
        return OneNNAssignment()
    if method is AssignmentMethod.PROBABILISTIC:
        return ProbabilisticAssignment(
            metric=config.distance_metric,
            max_round=config.probabilistic_max_round,
        )
    logger.warning("Unknown assignment method %s; sending the global model", method)
    return GlobalModelAssignment()
