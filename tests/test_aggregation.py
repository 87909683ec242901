"""
Tests for server-side aggregation strategies.
"""

import numpy as np
import pytest

from consensus_clustering_fl.domain.aggregation import (
    ClientUpdate,
    aggregate_weighted,
    blend_models,
)
from consensus_clustering_fl.domain.errors import AggregationError
from consensus_clustering_fl.infrastructure.aggregation import (
    FedAvgAggregation,
    FedProxAggregation,
    MedianAggregation,
    SimpleAverageAggregation,
    get_aggregation_strategy,
    list_available_aggregations,
)


@pytest.fixture
def updates(weights_factory):
    return [
        ClientUpdate("client-0", weights_factory(1.0, version=2), 100),
        ClientUpdate("client-1", weights_factory(4.0, version=3), 300),
        ClientUpdate("client-2", weights_factory(100.0, version=1), 0),
    ]


class TestRegistry:
    """Test strategy lookup"""

    @pytest.mark.parametrize(
        "name, cls",
        [
            ("fedavg", FedAvgAggregation),
            ("FedProx", FedProxAggregation),
            ("simple", SimpleAverageAggregation),
            ("median", MedianAggregation),
        ],
    )
    def test_lookup(self, name, cls):
        strategy = get_aggregation_strategy(name)
        assert isinstance(strategy, cls)
        assert strategy.name == name.lower()

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown aggregation method"):
            get_aggregation_strategy("krum")

    def test_available(self):
        assert set(list_available_aggregations()) == {"fedavg", "fedprox", "simple", "median"}


class TestStrategies:
    """Test the combination rules"""

    def test_fedavg_weights_by_data_size(self, updates):
        result = FedAvgAggregation().aggregate(updates)
        np.testing.assert_allclose(result.vectorize(), np.full(9, 3.25))

    def test_fedprox_matches_fedavg(self, updates):
        a = FedAvgAggregation().aggregate(updates)
        b = FedProxAggregation().aggregate(updates)
        assert a.allclose(b)

    def test_simple_average(self, updates):
        result = SimpleAverageAggregation().aggregate(updates)
        np.testing.assert_allclose(result.vectorize(), np.full(9, 35.0))

    def test_median(self, updates):
        result = MedianAggregation().aggregate(updates)
        np.testing.assert_allclose(result.vectorize(), np.full(9, 4.0))

    def test_version_is_max_plus_one(self, updates):
        assert FedAvgAggregation().aggregate(updates).version == 4

    def test_zero_total_weight_uses_plain_mean(self, weights_factory):
        updates = [
            ClientUpdate("a", weights_factory(1.0), 0),
            ClientUpdate("b", weights_factory(3.0), 0),
        ]
        result = FedAvgAggregation().aggregate(updates)
        np.testing.assert_allclose(result.vectorize(), np.full(9, 2.0))

    def test_identical_models_are_preserved(self, weights_factory):
        model = weights_factory(np.arange(9, dtype=float))
        updates = [ClientUpdate(f"c{i}", model, 50 * (i + 1)) for i in range(3)]
        result = FedAvgAggregation().aggregate(updates)
        np.testing.assert_allclose(result.vectorize(), model.vectorize())

    @pytest.mark.parametrize("name", ["fedavg", "fedprox", "simple", "median"])
    def test_empty_updates(self, name):
        with pytest.raises(AggregationError):
            get_aggregation_strategy(name).aggregate([])

    def test_result_keeps_architecture(self, updates):
        result = MedianAggregation().aggregate(updates)
        assert result.shapes == ((2, 2), (2, 1))
        result.validate()


class TestHelpers:
    """Test domain aggregation helpers"""

    def test_aggregate_weighted(self, weights_factory):
        result = aggregate_weighted(
            [weights_factory(0.0), weights_factory(10.0)], [3, 1], version=5
        )
        np.testing.assert_allclose(result.vectorize(), np.full(9, 2.5))
        assert result.version == 5

    def test_aggregate_weighted_empty(self):
        with pytest.raises(AggregationError):
            aggregate_weighted([], [])

    def test_blend_models(self, weights_factory):
        received = weights_factory(2.0, version=7)
        result = blend_models(received, weights_factory(0.0), 0.25)
        np.testing.assert_allclose(result.vectorize(), np.full(9, 0.5))
        assert result.version == 7
