"""consensus_clustering_fl: A deterministic federated learning simulator.

Clients are clustered every round by model similarity (Louvain, Leiden,
K-means or spectral clustering, optionally stabilized by consensus voting),
and receive the model of their cluster in the next round.
"""

from consensus_clustering_fl.config import ServerConfig, parse_run_config
from consensus_clustering_fl.domain import (
    DataPartitionProvider,
    Model,
    ModelWeights,
    RoundMetrics,
)
from consensus_clustering_fl.factory import (
    create_dataset,
    create_model,
    create_orchestrator,
)
from consensus_clustering_fl.orchestrator import RoundOrchestrator
from consensus_clustering_fl.rng import DeterministicRandomSource
from consensus_clustering_fl.infrastructure.models import list_available_models
from consensus_clustering_fl.infrastructure.datasets import list_available_datasets

__all__ = [
    # Configuration
    "ServerConfig",
    "parse_run_config",
    # Domain abstractions
    "DataPartitionProvider",
    "Model",
    "ModelWeights",
    "RoundMetrics",
    # Simulation
    "RoundOrchestrator",
    "DeterministicRandomSource",
    # Factory functions
    "create_dataset",
    "create_model",
    "create_orchestrator",
    # Registry functions
    "list_available_models",
    "list_available_datasets",
]
