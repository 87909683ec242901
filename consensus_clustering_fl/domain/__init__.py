"""Domain layer: Core abstractions and value objects of the federated simulation."""

from consensus_clustering_fl.domain.model import Model, ModelWeights
from consensus_clustering_fl.domain.dataset import (
    DataPartition,
    DataPartitionProvider,
    client_test_size,
    one_hot,
)
from consensus_clustering_fl.domain.aggregation import (
    AggregationStrategy,
    ClientAggregationContext,
    ClientAggregationStrategy,
    ClientUpdate,
    aggregate_weighted,
    blend_models,
)
from consensus_clustering_fl.domain.client import ClientRecord, ClientStatus, make_client
from consensus_clustering_fl.domain.clustering import ClusteringEngine, ClusteringInput
from consensus_clustering_fl.domain.errors import (
    AggregationError,
    InsufficientClientsError,
    MalformedModelError,
    SimulationError,
)
from consensus_clustering_fl.domain.metrics import (
    ClientRoundMetrics,
    ClusterMetrics,
    RoundMetrics,
    WeightsSnapshot,
)

__all__ = [
    # Models
    "Model",
    "ModelWeights",
    # Data
    "DataPartition",
    "DataPartitionProvider",
    "client_test_size",
    "one_hot",
    # Aggregation
    "AggregationStrategy",
    "ClientAggregationContext",
    "ClientAggregationStrategy",
    "ClientUpdate",
    "aggregate_weighted",
    "blend_models",
    # Clients
    "ClientRecord",
    "ClientStatus",
    "make_client",
    # Clustering
    "ClusteringEngine",
    "ClusteringInput",
    # Errors
    "AggregationError",
    "InsufficientClientsError",
    "MalformedModelError",
    "SimulationError",
    # Metrics
    "ClientRoundMetrics",
    "ClusterMetrics",
    "RoundMetrics",
    "WeightsSnapshot",
]
