"""Round orchestration for the federated simulation.

One round runs these phases strictly in order:
SelectParticipants -> Distribute -> LocalTrain -> Collect -> Cluster
-> Aggregate -> Evaluate -> Record.

The main stream is consumed, per round, by the participant shuffle, the
probabilistic assignment draws (if any) and one draw per participant that
seeds its training sub-stream. Clustering uses isolated streams only.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from consensus_clustering_fl.assignment import create_assignment_strategy
from consensus_clustering_fl.clustering import ClientClusterer, ClusteringResult
from consensus_clustering_fl.config import ServerConfig
from consensus_clustering_fl.context import SimulationContext
from consensus_clustering_fl.domain.aggregation import ClientAggregationContext, ClientUpdate
from consensus_clustering_fl.domain.client import ClientRecord, ClientStatus, make_client
from consensus_clustering_fl.domain.dataset import DataPartition, DataPartitionProvider
from consensus_clustering_fl.domain.errors import InsufficientClientsError, MalformedModelError
from consensus_clustering_fl.domain.metrics import (
    ClientRoundMetrics,
    ClusterMetrics,
    RoundMetrics,
    WeightsSnapshot,
)
from consensus_clustering_fl.domain.model import Model, ModelWeights
from consensus_clustering_fl.infrastructure.aggregation import get_aggregation_strategy
from consensus_clustering_fl.infrastructure.client_aggregation import (
    compute_adaptive_epochs,
    create_client_aggregation,
)
from consensus_clustering_fl.infrastructure.models import get_model_class
from consensus_clustering_fl.rng import TRAINING_STREAM_OFFSET, DeterministicRandomSource
from consensus_clustering_fl.snapshot import ExperimentSnapshot
from consensus_clustering_fl.tracking import RoundMetricsSink

logger = logging.getLogger(__name__)

_SUBSTREAM_RANGE = 2**31 - 1

ModelFactory = Callable[..., Model]


@dataclass
class ClientTrainingResult:
    """Outcome of one client's local training."""

    client_id: str
    received: ModelWeights
    weights: ModelWeights
    data_size: int
    metrics: ClientRoundMetrics


class RoundOrchestrator:
    """Drives a whole experiment, one round at a time.

    Args:
        config: Experiment configuration (validated on construction).
        provider: Source of client and held-out test data.
        model_factory: Builds a trainable model; called with ``rng=...``
            once to draw the initial global model. Defaults to the MLP sized
            for ``provider``.
        sinks: Receive every completed round.
        context: Mutable experiment state; a fresh one by default.
    """

    def __init__(
        self,
        config: ServerConfig,
        provider: DataPartitionProvider,
        model_factory: Optional[ModelFactory] = None,
        sinks: Optional[Sequence[RoundMetricsSink]] = None,
        context: Optional[SimulationContext] = None,
    ):
        config.validate()
        self.config = config
        self.provider = provider
        self.model_factory = model_factory or self._default_model_factory
        self.sinks: List[RoundMetricsSink] = list(sinks or [])
        self.context = context or SimulationContext(seed=config.seed)

        self.aggregation = get_aggregation_strategy(config.aggregation_method)
        self.assignment = create_assignment_strategy(config)
        self.clusterer = ClientClusterer(config)
        self._client_strategies = {}

        self.clients: List[ClientRecord] = []
        self.global_model: Optional[ModelWeights] = None
        self.history: List[RoundMetrics] = []
        self.current_round = 0
        self._test_set: Optional[Tuple[np.ndarray, np.ndarray]] = None
        self._started = False

    def _default_model_factory(self, rng: Optional[DeterministicRandomSource] = None) -> Model:
        model_cls = get_model_class("mlp")
        return model_cls(
            input_size=self.provider.input_size,
            num_classes=self.provider.num_classes,
            hidden_size=self.config.hidden_size,
            learning_rate=self.config.learning_rate,
            rng=rng,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Reset the context, draw the global model, then create the clients.

        Both draw from the main stream: the Xavier weights first, then one
        value per client for its data size (``200 + floor(400 * u)``).
        """
        self.context.reset(self.config.seed)
        rng = self.context.rng

        self.global_model = self.model_factory(rng=rng).get_weights(version=0)
        self.clients = [
            make_client(
                i,
                int(rng.random() * 400) + 200,
                client_aggregation=self.config.client_aggregation_method,
            )
            for i in range(self.config.num_clients)
        ]
        self.history = []
        self.current_round = 0
        logger.info(
            "Initialized %d clients, global model with %d parameters",
            len(self.clients),
            self.global_model.dimension,
        )

    def start(self) -> None:
        """Initialize the experiment and notify the sinks."""
        self.initialize()
        for sink in self.sinks:
            sink.start(self.config)
        self._started = True

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()
        self._started = False

    def run(self, num_rounds: Optional[int] = None) -> List[RoundMetrics]:
        """Run ``num_rounds`` rounds (default: the configured number).

        Raises:
            InsufficientClientsError: If a round cannot select enough clients.
        """
        if not self._started:
            self.start()
        try:
            for _ in range(self.config.num_rounds if num_rounds is None else num_rounds):
                self.run_round()
        finally:
            self.close()
        return self.history

    # ------------------------------------------------------------------
    # Round phases
    # ------------------------------------------------------------------

    def select_participants(self) -> List[ClientRecord]:
        """Shuffle selectable clients with the main stream and take the first ``clients_per_round``."""
        available = [c for c in self.clients if c.status.selectable]
        shuffled = self.context.rng.shuffle(list(available))
        selected = shuffled[: min(self.config.clients_per_round, len(shuffled))]
        if len(selected) < self.config.min_clients_required:
            raise InsufficientClientsError(self.config.min_clients_required, len(selected))
        return selected

    def run_round(self) -> RoundMetrics:
        """Execute one complete round and return its metrics.

        If any phase after selection raises, participants that had not yet
        been collected are marked ``ERROR`` (and stay selectable) before the
        exception propagates.
        """
        if not self._started:
            self.start()
        server_round = self.current_round + 1

        # SelectParticipants
        participants = self.select_participants()
        for client in participants:
            client.client_aggregation = self.config.client_aggregation_method
            client.status = ClientStatus.RECEIVING
        logger.info(
            "Round %d: selected %s", server_round, ", ".join(c.client_id for c in participants)
        )

        try:
            metrics = self._execute_round(participants, server_round)
        except Exception:
            failed = [c for c in participants if c.status is not ClientStatus.COMPLETED]
            for client in failed:
                client.status = ClientStatus.ERROR
            logger.error(
                "Round %d failed; %d participant(s) marked as error", server_round, len(failed)
            )
            raise

        for sink in self.sinks:
            sink.record(metrics)

        logger.info(
            "Round %d: accuracy=%.4f loss=%.4f clusters=%d",
            server_round,
            metrics.global_accuracy,
            metrics.global_loss,
            len(metrics.clusters),
        )
        return metrics

    def _execute_round(self, participants: List[ClientRecord], server_round: int) -> RoundMetrics:
        global_model = self.global_model

        # Distribute
        assignments = self.assignment.assign_round(
            participants, global_model, self.context, server_round
        )

        # LocalTrain
        results = self._local_train(participants, assignments, server_round)

        # Collect
        updates = self._collect(results, server_round)
        collected = {u.client_id for u in updates}
        for client in participants:
            client.status = (
                ClientStatus.COMPLETED if client.client_id in collected else ClientStatus.ERROR
            )

        # Cluster
        clustering, cluster_metrics = self._cluster(updates, server_round)

        # Aggregate
        aggregation_start = time.perf_counter()
        new_global = self.aggregation.aggregate(updates)
        aggregation_time = time.perf_counter() - aggregation_start

        # Evaluate
        evaluation = self.evaluate_global(new_global)

        # Record
        metrics = RoundMetrics(
            round=server_round,
            global_loss=evaluation["loss"],
            global_accuracy=evaluation["accuracy"],
            participating_clients=[c.client_id for c in participants],
            distance_matrix=clustering.distance_matrix.tolist() if clustering is not None else [],
            clusters=[list(c) for c in clustering.clusters] if clustering is not None else [],
            agreement_matrix=(
                clustering.agreement_matrix.tolist()
                if clustering is not None and clustering.agreement_matrix is not None
                else None
            ),
            silhouette_avg=clustering.silhouette if clustering is not None else None,
            cluster_metrics=cluster_metrics,
            client_metrics=[r.metrics for r in results],
            aggregation_time=aggregation_time,
            timestamp=time.time(),
            weights_snapshot=WeightsSnapshot.from_weights(new_global),
        )

        self.global_model = new_global
        self.history.append(metrics)
        self.current_round = server_round
        return metrics

    def _partition(self, client: ClientRecord) -> DataPartition:
        partitions = self.context.partitions
        if client.client_id not in partitions:
            partitions[client.client_id] = self.provider.load_partition(
                client.client_id,
                client.data_size,
                non_iid=self.config.non_iid,
                seed=self.config.seed,
            )
        return partitions[client.client_id]

    def _client_strategy(self, client: ClientRecord):
        method = client.client_aggregation
        if method not in self._client_strategies:
            self._client_strategies[method] = create_client_aggregation(method, self.config)
        return self._client_strategies[method]

    def _local_train(
        self,
        participants: Sequence[ClientRecord],
        assignments: Dict[str, ModelWeights],
        server_round: int,
    ) -> List[ClientTrainingResult]:
        """Fan out local training and collect results in selection order.

        Sub-stream seeds and data partitions are prepared up front in the
        calling thread, so worker count never changes the outcome.
        """
        base = DeterministicRandomSource(self.context.seed)
        jobs = []
        for client in participants:
            sub_rng = base.derive(TRAINING_STREAM_OFFSET + self.context.rng.randrange(_SUBSTREAM_RANGE))
            self._client_strategy(client)
            jobs.append((client, assignments[client.client_id], sub_rng, self._partition(client)))

        workers = min(self.config.training_workers, len(jobs))
        if workers <= 1:
            return [self._train_client(*job, server_round) for job in jobs]

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._train_client, *job, server_round) for job in jobs]
            return [f.result() for f in futures]

    def _train_client(
        self,
        client: ClientRecord,
        received: ModelWeights,
        rng: DeterministicRandomSource,
        partition: DataPartition,
        server_round: int,
    ) -> ClientTrainingResult:
        client.status = ClientStatus.TRAINING
        client.push_received(received)

        context = ClientAggregationContext(
            client_id=client.client_id,
            server_round=server_round,
            global_model=self.global_model,
            gradient_norm_history=list(client.gradient_norm_history),
            local_model_history=list(client.local_model_history),
            received_model_history=list(client.received_model_history),
        )
        start_model = self._client_strategy(client).blend(
            received, client.last_local_model, context
        )

        epochs = client.local_epochs or self.config.local_epochs
        if self.config.adaptive_epochs:
            epochs = compute_adaptive_epochs(
                list(client.gradient_norm_history), epochs, client.client_id
            )
        learning_rate = client.learning_rate or self.config.learning_rate

        # Parameters cross the client boundary as Flower NDArrays
        model = self.model_factory()
        model.set_parameters(start_model.to_ndarrays())
        train_metrics = model.train(
            partition.X_train,
            partition.y_train,
            epochs=epochs,
            rng=rng,
            learning_rate=learning_rate,
        )

        client.status = ClientStatus.EVALUATING
        test_metrics = model.evaluate(partition.X_test, partition.y_test)
        trained = ModelWeights.from_ndarrays(model.get_parameters(), version=received.version)

        client.push_local(trained)
        client.push_gradient_norm(train_metrics["gradient_norm"])
        client.local_loss = train_metrics["loss"]
        client.local_accuracy = train_metrics["accuracy"]
        client.local_test_accuracy = test_metrics["accuracy"]
        client.rounds_participated += 1
        client.status = ClientStatus.SENDING

        return ClientTrainingResult(
            client_id=client.client_id,
            received=received,
            weights=trained,
            data_size=client.data_size,
            metrics=ClientRoundMetrics(
                client_id=client.client_id,
                loss=train_metrics["loss"],
                accuracy=train_metrics["accuracy"],
                test_accuracy=test_metrics["accuracy"],
                gradient_norm=train_metrics["gradient_norm"],
                data_size=client.data_size,
                epochs=epochs,
            ),
        )

    def _collect(
        self,
        results: Sequence[ClientTrainingResult],
        server_round: int,
    ) -> List[ClientUpdate]:
        """Gather submitted models; malformed ones are dropped with a warning."""
        override = self.config.submission_override
        updates = []
        for result in results:
            weights = result.weights
            if override is not None and override.applies(result.client_id, server_round):
                logger.info(
                    "Round %d: %s submits its received model", server_round, result.client_id
                )
                weights = result.received
            try:
                weights.validate(self.global_model.shapes)
            except MalformedModelError as e:
                logger.warning("Round %d: dropping model from %s: %s", server_round, result.client_id, e)
                continue
            updates.append(ClientUpdate(result.client_id, weights, result.data_size))
        return updates

    def _cluster(
        self,
        updates: Sequence[ClientUpdate],
        server_round: int,
    ) -> Tuple[Optional[ClusteringResult], List[ClusterMetrics]]:
        """Cluster the collected models, score the clusters and refresh the ClusterModelStore.

        A failure in any of these steps is logged and leaves the store,
        the previous clusters and the cluster metrics empty.
        """
        try:
            result = self.clusterer.cluster_clients(updates, self.global_model, self.context.seed)
            metrics = self._cluster_metrics(result)
        except Exception:
            logger.exception("Round %d: clustering failed, continuing without clusters", server_round)
            self.context.replace_cluster_models({})
            self.context.previous_clusters = []
            return None, []

        self.context.replace_cluster_models(result.models_by_client())
        self.context.previous_clusters = [list(c) for c in result.clusters]
        return result, metrics

    def _cluster_metrics(self, clustering: ClusteringResult) -> List[ClusterMetrics]:
        """Accuracy of every cluster model on its members' pooled test sets."""
        metrics = []
        model = self.model_factory()
        for cluster in clustering.cluster_models:
            parts = [self.context.partitions[cid] for cid in cluster.members if cid in self.context.partitions]
            accuracy = 0.0
            if parts:
                model.set_weights(cluster.model)
                X = np.concatenate([p.X_test for p in parts])
                y = np.concatenate([p.y_test for p in parts])
                accuracy = model.evaluate(X, y)["accuracy"]
            metrics.append(
                ClusterMetrics(
                    cluster_id=cluster.cluster_id,
                    members=list(cluster.members),
                    accuracy=accuracy,
                )
            )
        return metrics

    def evaluate_global(self, weights: Optional[ModelWeights] = None) -> Dict[str, float]:
        """Loss and accuracy of ``weights`` (default: the global model) on the held-out set."""
        if self._test_set is None:
            self._test_set = self.provider.load_centralized_test()
        model = self.model_factory()
        model.set_weights(weights or self.global_model)
        X_test, y_test = self._test_set
        return model.evaluate(X_test, y_test)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> ExperimentSnapshot:
        """Capture the current experiment state."""
        return ExperimentSnapshot(
            config=self.config,
            current_round=self.current_round,
            global_model=self.global_model,
            history=list(self.history),
            client_models={
                c.client_id: c.last_local_model for c in self.clients if c.last_local_model is not None
            },
            client_data_sizes={c.client_id: c.data_size for c in self.clients},
            cluster_models=dict(self.context.cluster_model_store),
            previous_clusters=[list(c) for c in self.context.previous_clusters],
            rng_state=self.context.rng.getstate(),
        )

    def restore(self, snapshot: ExperimentSnapshot) -> None:
        """Resume from a snapshot taken with the same configuration.

        Model and gradient histories beyond each client's last local model
        are not part of a snapshot and restart empty.
        """
        self.context.reset(snapshot.config.seed)
        if snapshot.rng_state is not None:
            self.context.rng.setstate(snapshot.rng_state)
        self.context.replace_cluster_models(snapshot.cluster_models)
        self.context.previous_clusters = [list(c) for c in snapshot.previous_clusters]

        clients = []
        for index, (client_id, data_size) in enumerate(snapshot.client_data_sizes.items()):
            client = make_client(
                index, data_size, client_aggregation=self.config.client_aggregation_method
            )
            client.client_id = client_id
            last = snapshot.client_models.get(client_id)
            if last is not None:
                client.push_local(last)
            clients.append(client)

        self.clients = clients
        self.global_model = snapshot.global_model
        self.history = list(snapshot.history)
        self.current_round = snapshot.current_round
        for sink in self.sinks:
            sink.start(self.config)
        self._started = True
