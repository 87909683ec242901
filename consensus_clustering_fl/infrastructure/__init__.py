"""Infrastructure layer: Concrete implementations of domain abstractions."""

from consensus_clustering_fl.infrastructure.models import (
    MLPModel,
    get_model_class,
    list_available_models,
)
from consensus_clustering_fl.infrastructure.datasets import (
    MNISTDataset,
    SyntheticDataset,
    get_dataset_class,
    list_available_datasets,
)
from consensus_clustering_fl.infrastructure.aggregation import (
    FedAvgAggregation,
    FedProxAggregation,
    MedianAggregation,
    SimpleAverageAggregation,
    get_aggregation_strategy,
)
from consensus_clustering_fl.infrastructure.client_aggregation import (
    FiftyFiftyAggregation,
    GravityAggregation,
    NoClientAggregation,
    create_client_aggregation,
)
from consensus_clustering_fl.infrastructure.community import (
    LeidenClustering,
    LouvainClustering,
)
from consensus_clustering_fl.infrastructure.kmeans import KMeansClustering
from consensus_clustering_fl.infrastructure.spectral import SpectralClustering

__all__ = [
    # Models
    "MLPModel",
    "get_model_class",
    "list_available_models",
    # Datasets
    "MNISTDataset",
    "SyntheticDataset",
    "get_dataset_class",
    "list_available_datasets",
    # Server aggregation
    "FedAvgAggregation",
    "FedProxAggregation",
    "MedianAggregation",
    "SimpleAverageAggregation",
    "get_aggregation_strategy",
    # Client aggregation
    "FiftyFiftyAggregation",
    "GravityAggregation",
    "NoClientAggregation",
    "create_client_aggregation",
    # Clustering
    "KMeansClustering",
    "LeidenClustering",
    "LouvainClustering",
    "SpectralClustering",
]
