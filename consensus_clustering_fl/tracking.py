"""Round metrics sinks and MLflow experiment tracking."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import mlflow

from consensus_clustering_fl.config import ServerConfig
from consensus_clustering_fl.domain.metrics import RoundMetrics

logger = logging.getLogger(__name__)


class RoundMetricsSink(ABC):
    """Receives every completed round, in order."""

    def start(self, config: ServerConfig) -> None:
        """Called once before the first round."""

    @abstractmethod
    def record(self, metrics: RoundMetrics) -> None:
        """Consume the metrics of one round."""
        pass

    def close(self) -> None:
        """Called once after the last round."""


class InMemorySink(RoundMetricsSink):
    """Keeps every round in a list."""

    def __init__(self):
        self.config: Optional[ServerConfig] = None
        self.rounds: List[RoundMetrics] = []

    def start(self, config: ServerConfig) -> None:
        self.config = config

    def record(self, metrics: RoundMetrics) -> None:
        self.rounds.append(metrics)


def generate_experiment_name(config: ServerConfig) -> str:
    """Generate the MLflow experiment name from configuration."""
    consensus = "consensus" if config.use_consensus else "single"
    return (
        f"fl-consensus-{config.dataset}-{config.clustering_method.value}-"
        f"{consensus}-{config.aggregation_method.value}"
    )


def generate_run_name(config: ServerConfig) -> str:
    """Generate the MLflow run name from configuration."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return (
        f"{config.clustering_method.value}_{config.assignment_method.value}_"
        f"{config.client_aggregation_method.value}_{config.distance_metric.value}_"
        f"r{config.num_rounds}_c{config.num_clients}_s{config.seed}_{timestamp}"
    )


def round_metric_values(metrics: RoundMetrics) -> Dict[str, float]:
    """Flatten one round into MLflow metric names and values."""
    values: Dict[str, float] = {
        "global_loss": metrics.global_loss,
        "global_accuracy": metrics.global_accuracy,
        "num_participants": float(len(metrics.participating_clients)),
        "num_clusters": float(len(metrics.clusters)),
        "aggregation_time": metrics.aggregation_time,
    }
    if metrics.silhouette_avg is not None:
        values["silhouette_avg"] = metrics.silhouette_avg
    for cluster in metrics.cluster_metrics:
        values[f"cluster_{cluster.cluster_id}_accuracy"] = cluster.accuracy
        values[f"cluster_{cluster.cluster_id}_size"] = float(len(cluster.members))
    for client in metrics.client_metrics:
        prefix = client.client_id.replace("-", "_")
        values[f"{prefix}_loss"] = client.loss
        values[f"{prefix}_accuracy"] = client.accuracy
        values[f"{prefix}_test_accuracy"] = client.test_accuracy
        values[f"{prefix}_gradient_norm"] = client.gradient_norm
    if metrics.weights_snapshot is not None:
        snapshot = metrics.weights_snapshot
        values.update(
            {
                "w1_mean": snapshot.w1_mean,
                "w1_std": snapshot.w1_std,
                "w2_mean": snapshot.w2_mean,
                "w2_std": snapshot.w2_std,
            }
        )
    return {k: float(v) for k, v in values.items()}


class MlflowRoundSink(RoundMetricsSink):
    """Log rounds to MLflow, one step per round.

    Opens its own run on :meth:`start` unless a run is already active, in
    which case it logs into that run and leaves it open.

    Args:
        experiment_name: Defaults to :func:`generate_experiment_name`.
        run_name: Defaults to :func:`generate_run_name`.
        tags: Extra run tags.
    """

    def __init__(
        self,
        experiment_name: Optional[str] = None,
        run_name: Optional[str] = None,
        tags: Optional[Dict[str, Any]] = None,
    ):
        self.experiment_name = experiment_name
        self.run_name = run_name
        self.tags = tags or {}
        self._owns_run = False

    def start(self, config: ServerConfig) -> None:
        if mlflow.active_run() is None:
            mlflow.set_experiment(self.experiment_name or generate_experiment_name(config))
            mlflow.start_run(run_name=self.run_name or generate_run_name(config))
            self._owns_run = True
        if self.tags:
            mlflow.set_tags(self.tags)
        mlflow.log_params(config.to_params())
        logger.info("Logging rounds to MLflow run %s", mlflow.active_run().info.run_id)

    def record(self, metrics: RoundMetrics) -> None:
        mlflow.log_metrics(round_metric_values(metrics), step=metrics.round)

    def close(self) -> None:
        if self._owns_run:
            mlflow.end_run()
            self._owns_run = False
