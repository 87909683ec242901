"""Infrastructure: Client-side aggregation of the received model.

Before local training, a client may blend the model it received with its
previous local model:
- none: train from the received model
- 50-50: parameter mean of received and previous
- gravity: weight the received model by a gravity-like attraction that
  decays with the squared L2 distance between the two models
"""

import logging
from typing import Dict, List, Optional, Sequence, Type, Union

import numpy as np

from consensus_clustering_fl.config import ClientAggregationMethod, OverrideRule, ServerConfig
from consensus_clustering_fl.domain.aggregation import (
    ClientAggregationContext,
    ClientAggregationStrategy,
    blend_models,
)
from consensus_clustering_fl.domain.model import ModelWeights

logger = logging.getLogger(__name__)

GRADIENT_INCREASE_RATIO = 1.2


def detect_gradient_increase(gradient_norm_history: Optional[Sequence[float]]) -> bool:
    """True when the latest gradient norm is at least 20% above the one before.

    Args:
        gradient_norm_history: Norms, most recent first.
    """
    if not gradient_norm_history or len(gradient_norm_history) < 2:
        return False
    latest, before = gradient_norm_history[0], gradient_norm_history[1]
    return latest >= before * GRADIENT_INCREASE_RATIO


def compute_adaptive_epochs(
    gradient_norm_history: Optional[Sequence[float]],
    base_epochs: int,
    client_id: str = "",
) -> int:
    """Double ``base_epochs`` after a gradient norm increase."""
    if not detect_gradient_increase(gradient_norm_history):
        return base_epochs
    latest, before = gradient_norm_history[0], gradient_norm_history[1]
    logger.info(
        "Client %s: gradient norm %.4f -> %.4f, doubling epochs to %d",
        client_id,
        before,
        latest,
        base_epochs * 2,
    )
    return base_epochs * 2


# Registry of available client aggregation strategies
_CLIENT_AGGREGATION_REGISTRY: Dict[ClientAggregationMethod, Type[ClientAggregationStrategy]] = {}


def register_client_aggregation(method: ClientAggregationMethod):
    """Decorator to register a client aggregation strategy class."""

    def decorator(cls: Type[ClientAggregationStrategy]) -> Type[ClientAggregationStrategy]:
        _CLIENT_AGGREGATION_REGISTRY[method] = cls
        return cls

    return decorator


def list_available_client_aggregations() -> List[str]:
    """List all available client aggregation method names."""
    return [m.value for m in _CLIENT_AGGREGATION_REGISTRY]


@register_client_aggregation(ClientAggregationMethod.NONE)
class NoClientAggregation(ClientAggregationStrategy):
    """Train from the received model as-is."""

    def blend(self, received, previous, context):
        return received

    @property
    def name(self) -> str:
        return "none"


@register_client_aggregation(ClientAggregationMethod.FIFTY_FIFTY)
class FiftyFiftyAggregation(ClientAggregationStrategy):
    """Start from the mean of the received and the previous local model."""

    def blend(self, received, previous, context):
        if previous is None:
            return received
        return blend_models(received, previous, 0.5)

    @property
    def name(self) -> str:
        return "50-50"


@register_client_aggregation(ClientAggregationMethod.GRAVITY)
class GravityAggregation(ClientAggregationStrategy):
    """Gravity blending of the received and previous local models.

    With ``d = ||received - previous||_2`` the attraction is
    ``F = G * m1 * m2 / (d^2 + epsilon)``; normalizing by its value at
    ``d = 0`` gives the blend weight ``w = epsilon / (d^2 + epsilon)``,
    which lies in ``(0, 1]`` and does not depend on ``G`` or the masses.

    When the client's gradient norm rose by 20% or more and the global
    model is known, the client blends the global model instead of the
    received one. An optional override rule pins ``w`` for designated
    clients inside a round window.

    Args:
        epsilon: Softening term; larger values trust the received model more.
        override: Optional rule fixing the weight.
    """

    def __init__(self, epsilon: float = 1.0, override: Optional[OverrideRule] = None):
        if epsilon <= 0:
            raise ValueError("epsilon must be positive")
        self.epsilon = epsilon
        self.override = override

    def weight(self, received: ModelWeights, previous: ModelWeights) -> float:
        """Blend weight given to ``received``."""
        d = float(np.linalg.norm(received.vectorize() - previous.vectorize()))
        return self.epsilon / (d * d + self.epsilon)

    def blend(self, received, previous, context):
        if previous is None:
            return received

        if detect_gradient_increase(context.gradient_norm_history) and context.global_model is not None:
            logger.info(
                "Client %s: gradient increase detected, blending the global model",
                context.client_id,
            )
            received = context.global_model

        if self.override is not None and self.override.applies(context.client_id, context.server_round):
            w = self.override.weight
            logger.debug(
                "Client %s round %d: gravity weight fixed at %.3f",
                context.client_id,
                context.server_round,
                w,
            )
        else:
            w = self.weight(received, previous)
        return blend_models(received, previous, w)

    @property
    def name(self) -> str:
        return "gravity"


def create_client_aggregation(
    method: Union[ClientAggregationMethod, str],
    config: Optional[ServerConfig] = None,
) -> ClientAggregationStrategy:
    """Instantiate the client aggregation strategy for ``method``.

    Args:
        method: Method or its name.
        config: Supplies the gravity epsilon and override rule.

    Raises:
        ValueError: If the method is not registered.
    """
    try:
        method = ClientAggregationMethod(method)
    except ValueError:
        available = ", ".join(list_available_client_aggregations())
        raise ValueError(f"Unknown client aggregation: {method}. Available: {available}") from None

    if method is ClientAggregationMethod.GRAVITY and config is not None:
        return GravityAggregation(epsilon=config.gravity_epsilon, override=config.gravity_override)
    return _CLIENT_AGGREGATION_REGISTRY[method]()
