"""
Integration tests for round orchestration.
"""

import dataclasses
import json
import logging

import numpy as np
import pytest

from consensus_clustering_fl.config import ServerConfig
from consensus_clustering_fl.domain.client import ClientStatus
from consensus_clustering_fl.domain.errors import InsufficientClientsError
from consensus_clustering_fl.domain.model import ModelWeights
from consensus_clustering_fl.factory import create_orchestrator
from consensus_clustering_fl.infrastructure.models import MLPModel
from consensus_clustering_fl.orchestrator import RoundOrchestrator
from consensus_clustering_fl.snapshot import ExperimentSnapshot
from consensus_clustering_fl.tracking import InMemorySink


def run_experiment(config, provider, rounds=None):
    orchestrator = RoundOrchestrator(config, provider)
    return orchestrator.run(rounds)


class TestInitialization:
    """Test experiment setup"""

    def test_clients_and_global_model(self, small_config, tiny_provider):
        orchestrator = RoundOrchestrator(small_config, tiny_provider)
        orchestrator.initialize()

        assert [c.client_id for c in orchestrator.clients] == [f"client-{i}" for i in range(6)]
        assert all(200 <= c.data_size < 600 for c in orchestrator.clients)
        assert orchestrator.global_model.shapes == ((8, 6), (6, 4))
        assert orchestrator.global_model.version == 0
        assert orchestrator.current_round == 0

    def test_initialization_is_reproducible(self, small_config, tiny_provider):
        a = RoundOrchestrator(small_config, tiny_provider)
        b = RoundOrchestrator(small_config, tiny_provider)
        a.initialize()
        b.initialize()
        assert a.global_model.allclose(b.global_model)
        assert [c.data_size for c in a.clients] == [c.data_size for c in b.clients]

    def test_invalid_config_rejected(self, tiny_provider):
        with pytest.raises(ValueError):
            RoundOrchestrator(ServerConfig(num_clients=0), tiny_provider)


class TestRounds:
    """Test complete rounds"""

    def test_metrics_shape(self, small_config, tiny_provider):
        history = run_experiment(small_config, tiny_provider)

        assert [m.round for m in history] == [1, 2, 3]
        for metrics in history:
            assert len(metrics.participating_clients) == 4
            assert len(set(metrics.participating_clients)) == 4
            assert 0.0 <= metrics.global_accuracy <= 1.0
            assert metrics.global_loss > 0
            assert len(metrics.client_metrics) == 4
            assert len(metrics.distance_matrix) == 4
            assert metrics.weights_snapshot is not None
            assert metrics.aggregation_time >= 0

    def test_clusters_cover_participants(self, small_config, tiny_provider):
        for metrics in run_experiment(small_config, tiny_provider):
            members = [cid for cluster in metrics.clusters for cid in cluster]
            assert sorted(members) == sorted(metrics.participating_clients)
            assert sum(len(c.members) for c in metrics.cluster_metrics) == 4

    def test_participants_complete_and_others_stay_idle(self, small_config, tiny_provider):
        orchestrator = RoundOrchestrator(small_config, tiny_provider)
        orchestrator.run(2)
        for client in orchestrator.clients:
            if client.rounds_participated:
                assert client.status is ClientStatus.COMPLETED
            else:
                assert client.status is ClientStatus.IDLE
        assert all(c.status.selectable for c in orchestrator.clients)
        assert sum(c.rounds_participated for c in orchestrator.clients) == 8

    def test_cluster_store_refreshed(self, small_config, tiny_provider):
        orchestrator = RoundOrchestrator(small_config, tiny_provider)
        metrics = orchestrator.run(1)[0]
        assert set(orchestrator.context.cluster_model_store) == set(metrics.participating_clients)
        assert orchestrator.context.previous_clusters == metrics.clusters

    def test_global_model_versions_advance(self, small_config, tiny_provider):
        orchestrator = RoundOrchestrator(small_config, tiny_provider)
        orchestrator.run(1)
        assert orchestrator.global_model.version == 1

    @pytest.mark.slow
    @pytest.mark.parametrize("method", ["louvain", "leiden", "kmeans", "spectral"])
    def test_every_clustering_method(self, small_config, tiny_provider, method):
        config = dataclasses.replace(small_config, clustering_method=method, num_rounds=2)
        history = run_experiment(config, tiny_provider)
        assert len(history) == 2
        assert all(m.clusters for m in history)

    @pytest.mark.slow
    @pytest.mark.parametrize(
        "overrides",
        [
            {"assignment_method": "probabilistic"},
            {"client_aggregation_method": "50-50"},
            {"client_aggregation_method": "gravity", "adaptive_epochs": True},
            {"aggregation_method": "median", "distance_metric": "l1"},
            {"distance_reference": "global", "distance_metric": "l2"},
        ],
    )
    def test_strategy_combinations(self, small_config, tiny_provider, overrides):
        config = dataclasses.replace(small_config, **overrides)
        history = run_experiment(config, tiny_provider)
        assert len(history) == 3


class TestDeterminism:
    """Equal seeds must give identical experiments"""

    def test_reruns_match(self, small_config, tiny_provider):
        a = run_experiment(small_config, tiny_provider)
        b = run_experiment(small_config, tiny_provider)
        assert [m.reproducible_fields() for m in a] == [m.reproducible_fields() for m in b]

    def test_seed_changes_selection(self, small_config, tiny_provider):
        a = run_experiment(small_config, tiny_provider, rounds=1)
        b = run_experiment(dataclasses.replace(small_config, seed=7), tiny_provider, rounds=1)
        assert a[0].reproducible_fields() != b[0].reproducible_fields()

    def test_worker_count_does_not_change_results(self, small_config, tiny_provider):
        serial = run_experiment(small_config, tiny_provider)
        threaded = run_experiment(
            dataclasses.replace(small_config, training_workers=3), tiny_provider
        )
        assert [m.reproducible_fields() for m in serial] == [
            m.reproducible_fields() for m in threaded
        ]


class TestFailures:
    """Test error handling inside rounds"""

    def test_insufficient_clients(self, tiny_provider):
        config = ServerConfig(num_clients=3, clients_per_round=2, min_clients_required=3, hidden_size=4)
        orchestrator = RoundOrchestrator(config, tiny_provider)
        with pytest.raises(InsufficientClientsError) as excinfo:
            orchestrator.run(1)
        assert excinfo.value.required == 3
        assert excinfo.value.available == 2
        assert str(excinfo.value) == "Not enough clients available. Required: 3, Available: 2"

    def test_malformed_model_is_dropped(self, small_config, tiny_provider, caplog):
        orchestrator = RoundOrchestrator(small_config, tiny_provider)
        original = orchestrator._train_client
        corrupted = []

        def train_and_corrupt(client, received, rng, partition, server_round):
            result = original(client, received, rng, partition, server_round)
            if not corrupted:
                corrupted.append(client.client_id)
                result.weights = ModelWeights(
                    layers=(np.zeros(3),), bias=np.zeros(1), shapes=((3, 1),)
                )
            return result

        orchestrator._train_client = train_and_corrupt
        with caplog.at_level(logging.WARNING):
            metrics = orchestrator.run(1)[0]

        bad = corrupted[0]
        assert f"dropping model from {bad}" in caplog.text
        assert bad in metrics.participating_clients
        assert all(bad not in cluster for cluster in metrics.clusters)
        assert len(metrics.distance_matrix) == 3
        assert next(c for c in orchestrator.clients if c.client_id == bad).status is ClientStatus.ERROR

    def test_training_failure_marks_participants_and_next_round_runs(
        self, small_config, tiny_provider, caplog
    ):
        orchestrator = RoundOrchestrator(small_config, tiny_provider)
        original = orchestrator._train_client

        def fail_once(*args):
            orchestrator._train_client = original
            raise RuntimeError("device lost")

        orchestrator._train_client = fail_once
        orchestrator.start()
        with pytest.raises(RuntimeError, match="device lost"):
            orchestrator.run_round()

        failed = [c for c in orchestrator.clients if c.status is ClientStatus.ERROR]
        assert len(failed) == 4
        assert orchestrator.current_round == 0
        assert "Round 1 failed" in caplog.text

        metrics = orchestrator.run_round()
        assert metrics.round == 1
        assert len(metrics.participating_clients) == 4

    def test_cluster_metrics_failure_is_not_fatal(self, small_config, tiny_provider, caplog):
        orchestrator = RoundOrchestrator(small_config, tiny_provider)

        def broken(clustering):
            raise ValueError("bad cluster model")

        orchestrator._cluster_metrics = broken
        metrics = orchestrator.run(1)[0]

        assert metrics.clusters == []
        assert metrics.cluster_metrics == []
        assert orchestrator.context.cluster_model_store == {}
        assert "clustering failed" in caplog.text

    def test_clustering_failure_is_not_fatal(self, small_config, tiny_provider, caplog):
        orchestrator = RoundOrchestrator(small_config, tiny_provider)

        def broken(*args, **kwargs):
            raise RuntimeError("boom")

        orchestrator.clusterer.cluster_clients = broken
        metrics = orchestrator.run(1)[0]

        assert metrics.clusters == []
        assert metrics.silhouette_avg is None
        assert orchestrator.context.cluster_model_store == {}
        assert "clustering failed" in caplog.text


class TestSnapshot:
    """Test pausing and resuming an experiment"""

    def test_resume_matches_uninterrupted_run(self, small_config, tiny_provider):
        full = run_experiment(small_config, tiny_provider)

        paused = RoundOrchestrator(small_config, tiny_provider)
        paused.start()
        paused.run_round()
        paused.run_round()
        data = json.loads(json.dumps(paused.snapshot().to_dict()))

        snapshot = ExperimentSnapshot.from_dict(data)
        resumed = RoundOrchestrator(snapshot.config, tiny_provider)
        resumed.restore(snapshot)
        third = resumed.run_round()

        assert resumed.current_round == 3
        assert third.reproducible_fields() == full[2].reproducible_fields()
        assert [m.round for m in resumed.history] == [1, 2, 3]

    def test_snapshot_contents(self, small_config, tiny_provider):
        orchestrator = RoundOrchestrator(small_config, tiny_provider)
        orchestrator.run(1)
        snapshot = orchestrator.snapshot()

        assert snapshot.current_round == 1
        assert len(snapshot.client_data_sizes) == 6
        assert len(snapshot.client_models) == 4
        assert snapshot.rng_state == orchestrator.context.rng.getstate()
        assert snapshot.config == small_config


class TestSinks:
    """Test round metric delivery"""

    def test_in_memory_sink(self, small_config, tiny_provider):
        sink = InMemorySink()
        orchestrator = RoundOrchestrator(small_config, tiny_provider, sinks=[sink])
        history = orchestrator.run()

        assert sink.config is small_config
        assert sink.rounds == history


class TestFactory:
    """Test building an orchestrator from run configuration"""

    def test_from_string(self, tiny_provider):
        orchestrator = create_orchestrator(
            "num-server-rounds=1 num-clients=4 clients-per-round=3 hidden-size=4 "
            "clustering-method='kmeans' n-clusters=2",
            dataset=tiny_provider,
        )
        assert orchestrator.config.num_rounds == 1
        history = orchestrator.run()
        assert len(history) == 1
        assert len(history[0].clusters) <= 2

    def test_factory_model_matches_default(self, small_config, tiny_provider):
        built = create_orchestrator(small_config, dataset=tiny_provider)
        direct = RoundOrchestrator(small_config, tiny_provider)
        built.initialize()
        direct.initialize()
        assert built.global_model.allclose(direct.global_model)


class TestClientExchange:
    """Local training receives and returns Flower parameter lists"""

    def test_training_goes_through_ndarrays(self, small_config, tiny_provider):
        received = []
        returned = []

        class RecordingMLP(MLPModel):
            def set_parameters(self, params):
                received.append([p.shape for p in params])
                super().set_parameters(params)

            def get_parameters(self):
                params = super().get_parameters()
                returned.append([p.shape for p in params])
                return params

        def factory(rng=None):
            return RecordingMLP(
                input_size=8, num_classes=4, hidden_size=6, learning_rate=0.05, rng=rng
            )

        recorded = RoundOrchestrator(small_config, tiny_provider, model_factory=factory).run(1)
        default = run_experiment(small_config, tiny_provider, rounds=1)

        shapes = [(8, 6), (6,), (6, 4), (4,)]
        assert received == [shapes] * 4
        assert returned == [shapes] * 4
        assert recorded[0].reproducible_fields() == default[0].reproducible_fields()
