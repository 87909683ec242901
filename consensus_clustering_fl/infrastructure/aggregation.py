"""Infrastructure: Server-side aggregation strategies."""

from typing import Dict, List, Type, Union

import numpy as np

from consensus_clustering_fl.config import AggregationMethod
from consensus_clustering_fl.domain.aggregation import AggregationStrategy


# Registry of available aggregation strategies
_AGGREGATION_REGISTRY: Dict[AggregationMethod, Type[AggregationStrategy]] = {}


def register_aggregation(method: AggregationMethod):
    """Decorator to register an aggregation strategy class."""

    def decorator(cls: Type[AggregationStrategy]) -> Type[AggregationStrategy]:
        _AGGREGATION_REGISTRY[method] = cls
        return cls

    return decorator


def get_aggregation_strategy(method: Union[AggregationMethod, str]) -> AggregationStrategy:
    """Instantiate the aggregation strategy for ``method``.

    Args:
        method: Aggregation method or its name (case-insensitive).

    Returns:
        AggregationStrategy instance.

    Raises:
        ValueError: If the method is not registered.
    """
    try:
        resolved = AggregationMethod(method)
    except ValueError:
        resolved = None
    if resolved not in _AGGREGATION_REGISTRY:
        available = ", ".join(m.value for m in _AGGREGATION_REGISTRY)
        raise ValueError(f"Unknown aggregation method: {method}. Available: {available}")
    return _AGGREGATION_REGISTRY[resolved]()


def list_available_aggregations() -> List[str]:
    """List all available aggregation method names."""
    return [m.value for m in _AGGREGATION_REGISTRY]


def _weighted_mean(vectors: np.ndarray, data_sizes: np.ndarray) -> np.ndarray:
    total = float(data_sizes.sum())
    if total <= 0:
        return vectors.mean(axis=0)
    return (data_sizes / total) @ vectors


@register_aggregation(AggregationMethod.FEDAVG)
class FedAvgAggregation(AggregationStrategy):
    """Federated Averaging: mean weighted by client data size."""

    def _combine(self, vectors, data_sizes):
        return _weighted_mean(vectors, data_sizes)

    @property
    def name(self) -> str:
        return "fedavg"


@register_aggregation(AggregationMethod.FEDPROX)
class FedProxAggregation(AggregationStrategy):
    """FedProx server step.

    The proximal term only changes the local objective, so the server
    combines models exactly like FedAvg.
    """

    def _combine(self, vectors, data_sizes):
        return _weighted_mean(vectors, data_sizes)

    @property
    def name(self) -> str:
        return "fedprox"


@register_aggregation(AggregationMethod.SIMPLE)
class SimpleAverageAggregation(AggregationStrategy):
    """Unweighted mean of the client models."""

    def _combine(self, vectors, data_sizes):
        return vectors.mean(axis=0)

    @property
    def name(self) -> str:
        return "simple"


@register_aggregation(AggregationMethod.MEDIAN)
class MedianAggregation(AggregationStrategy):
    """Coordinate-wise median, robust to a minority of outlying clients."""

    def _combine(self, vectors, data_sizes):
        return np.median(vectors, axis=0)

    @property
    def name(self) -> str:
        return "median"
