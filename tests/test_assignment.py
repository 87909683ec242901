"""
Tests for model assignment strategies.
"""

import numpy as np
import pytest

from consensus_clustering_fl.assignment import (
    GlobalModelAssignment,
    OneNNAssignment,
    ProbabilisticAssignment,
    create_assignment_strategy,
    distances_to_probabilities,
    sample_index,
)
from consensus_clustering_fl.config import AssignmentMethod, ServerConfig
from consensus_clustering_fl.context import SimulationContext
from consensus_clustering_fl.domain.client import make_client
from consensus_clustering_fl.rng import DeterministicRandomSource


class TestDistancesToProbabilities:
    """Test the distance to probability mapping"""

    def test_zero_distances_share_the_mass(self):
        probs = distances_to_probabilities([0.0005, 0.3, 0.0])
        np.testing.assert_allclose(probs, [0.5, 0.0, 0.5])

    def test_two_clusters(self):
        np.testing.assert_allclose(distances_to_probabilities([1.0, 3.0]), [0.75, 0.25])

    def test_renormalized(self):
        probs = distances_to_probabilities([1.0, 1.0, 2.0])
        np.testing.assert_allclose(probs, [0.375, 0.375, 0.25])
        assert probs.sum() == pytest.approx(1.0)

    def test_single_cluster(self):
        np.testing.assert_allclose(distances_to_probabilities([0.4]), [1.0])

    def test_empty(self):
        assert len(distances_to_probabilities([])) == 0

    def test_infinite_distance_keeps_a_valid_distribution(self):
        probs = distances_to_probabilities([1.0, np.inf])
        assert probs.sum() == pytest.approx(1.0)
        assert np.all(probs >= 0)


class TestSampleIndex:
    """Test the cumulative draw"""

    def test_consumes_one_value(self):
        rng = DeterministicRandomSource(42)
        expected = rng.fork()
        sample_index([0.2, 0.8], rng)
        expected.random()
        assert rng.getstate() == expected.getstate()

    def test_certain_outcome(self, rng):
        assert all(sample_index([0.0, 1.0, 0.0], rng) == 1 for _ in range(20))

    def test_first_cluster_for_small_draw(self):
        # Seed 42 first draw is ~0.0026
        assert sample_index([0.5, 0.5], DeterministicRandomSource(42)) == 0


@pytest.fixture
def clustered_context(weights_factory):
    context = SimulationContext(seed=42)
    near = weights_factory(1.0)
    far = weights_factory(-1.0)
    context.replace_cluster_models(
        {"client-0": near, "client-1": near, "client-2": far}
    )
    context.previous_clusters = [["client-0", "client-1"], ["client-2"]]
    return context


@pytest.fixture
def clients():
    return [make_client(i, 300) for i in range(4)]


class TestOneNNAssignment:
    """Test nearest-cluster assignment"""

    def test_stored_model_or_global(self, clustered_context, clients, weights_factory):
        global_model = weights_factory(0.0)
        assigned = OneNNAssignment().assign_round(clients, global_model, clustered_context, 2)

        assert assigned["client-0"] is clustered_context.cluster_model_store["client-0"]
        assert assigned["client-2"] is clustered_context.cluster_model_store["client-2"]
        assert assigned["client-3"] is global_model

    def test_no_draws(self, clustered_context, clients, weights_factory):
        state = clustered_context.rng.getstate()
        OneNNAssignment().assign_round(clients, weights_factory(0.0), clustered_context, 2)
        assert clustered_context.rng.getstate() == state


class TestProbabilisticAssignment:
    """Test sampling of cluster models"""

    def test_one_draw_per_client(self, clustered_context, clients, weights_factory):
        expected = clustered_context.rng.fork()
        ProbabilisticAssignment(max_round=5).assign_round(
            clients, weights_factory(0.0), clustered_context, 2
        )
        for _ in clients:
            expected.random()
        assert clustered_context.rng.getstate() == expected.getstate()

    def test_assigns_a_cluster_model(self, clustered_context, clients, weights_factory):
        store = clustered_context.cluster_model_store
        cluster_models = {id(store["client-0"]), id(store["client-2"])}
        assigned = ProbabilisticAssignment().assign_round(
            clients, weights_factory(0.0), clustered_context, 1
        )
        assert all(id(model) in cluster_models for model in assigned.values())

    def test_members_prefer_their_cluster_under_l2(self, clustered_context, weights_factory):
        # client-0 sits on its own cluster (distance 0), so it keeps it
        assigned = ProbabilisticAssignment(metric="l2").assign_round(
            [make_client(0, 300)], weights_factory(0.0), clustered_context, 1
        )
        assert assigned["client-0"] is clustered_context.cluster_model_store["client-0"]

    def test_without_clusters_sends_global(self, clients, weights_factory):
        context = SimulationContext(seed=1)
        global_model = weights_factory(0.0)
        state = context.rng.getstate()

        assigned = ProbabilisticAssignment().assign_round(clients, global_model, context, 1)

        assert all(model is global_model for model in assigned.values())
        assert context.rng.getstate() == state

    def test_late_rounds_fall_back_to_1nn(self, clustered_context, clients, weights_factory):
        global_model = weights_factory(0.0)
        state = clustered_context.rng.getstate()

        assigned = ProbabilisticAssignment(max_round=3).assign_round(
            clients, global_model, clustered_context, 4
        )

        assert clustered_context.rng.getstate() == state
        assert assigned["client-3"] is global_model
        assert assigned["client-1"] is clustered_context.cluster_model_store["client-1"]


class TestCreateAssignmentStrategy:
    """Test strategy selection from configuration"""

    def test_one_nn(self):
        strategy = create_assignment_strategy(ServerConfig(assignment_method="1NN"))
        assert isinstance(strategy, OneNNAssignment)
        assert strategy.method is AssignmentMethod.ONE_NN

    def test_probabilistic_uses_config(self):
        config = ServerConfig(
            assignment_method="probabilistic",
            probabilistic_max_round=7,
            distance_metric="l1",
        )
        strategy = create_assignment_strategy(config)
        assert isinstance(strategy, ProbabilisticAssignment)
        assert strategy.max_round == 7
        assert strategy.metric.value == "l1"

    def test_global_assignment(self, clients, weights_factory):
        global_model = weights_factory(0.5)
        assigned = GlobalModelAssignment().assign_round(
            clients, global_model, SimulationContext(), 1
        )
        assert all(model is global_model for model in assigned.values())
