"""
Pytest configuration and shared fixtures for the simulator tests.
"""

import logging

import numpy as np
import pytest

from consensus_clustering_fl.config import ServerConfig
from consensus_clustering_fl.domain.model import ModelWeights
from consensus_clustering_fl.infrastructure.datasets import SyntheticDataset
from consensus_clustering_fl.rng import DeterministicRandomSource


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep third-party loggers out of the test output"""
    logging.getLogger("mlflow").setLevel(logging.ERROR)


@pytest.fixture
def rng():
    return DeterministicRandomSource(42)


@pytest.fixture
def tiny_provider():
    """Small synthetic dataset: 8 features, 4 classes"""
    return SyntheticDataset(
        input_size=8,
        num_classes=4,
        train_per_class=60,
        test_per_class=15,
        data_seed=7,
    )


@pytest.fixture
def small_config():
    """Six clients, three rounds, FedAvg with Louvain clustering"""
    return ServerConfig(
        aggregation_method="fedavg",
        clustering_method="louvain",
        num_rounds=3,
        num_clients=6,
        clients_per_round=4,
        min_clients_required=2,
        local_epochs=1,
        learning_rate=0.05,
        hidden_size=6,
        seed=42,
    )


def make_weights(vector, shapes=((2, 2), (2, 1)), version=0):
    """Build ModelWeights from a flat W1,b1,W2,b2 vector"""
    return ModelWeights.from_vector(np.asarray(vector, dtype=np.float64), shapes, version=version)


@pytest.fixture
def weights_factory():
    """Create 9-parameter models ((2, 2) + (2, 1) layers) from vectors or a fill value"""

    def factory(value=0.0, version=0):
        if np.isscalar(value):
            value = np.full(9, float(value))
        return make_weights(value, version=version)

    return factory


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (full multi-round simulations)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


def pytest_collection_modifyitems(config, items):
    """Mark orchestrator tests as integration tests"""
    for item in items:
        if "test_orchestrator" in item.nodeid:
            item.add_marker(pytest.mark.integration)
