"""
Tests for the MLP model.
"""

import numpy as np
import pytest

from consensus_clustering_fl.domain.dataset import one_hot
from consensus_clustering_fl.domain.errors import MalformedModelError
from consensus_clustering_fl.domain.model import ModelWeights
from consensus_clustering_fl.factory import create_model
from consensus_clustering_fl.infrastructure.models import (
    MLPModel,
    get_model_class,
    list_available_models,
    xavier_weights,
)
from consensus_clustering_fl.rng import DeterministicRandomSource


@pytest.fixture
def model():
    return MLPModel(input_size=8, num_classes=4, hidden_size=6, rng=DeterministicRandomSource(42))


@pytest.fixture
def blobs(tiny_provider):
    X, y = tiny_provider.load_centralized_test()
    return X, y


class TestRegistry:
    """Test model registration"""

    def test_mlp_registered(self):
        assert "mlp" in list_available_models()
        assert get_model_class("MLP") is MLPModel

    def test_unknown_model(self):
        with pytest.raises(ValueError, match="Unknown model"):
            get_model_class("transformer")

    def test_create_model_sizes_from_dataset(self, tiny_provider):
        model = create_model("mlp", tiny_provider, hidden_size=5)
        assert model.input_shape == (8,)
        assert model.num_classes == 4
        assert model.hidden_size == 5


class TestInitialization:
    """Test Xavier initialization"""

    def test_bounds_and_zero_bias(self):
        weights = xavier_weights(DeterministicRandomSource(1), 8, 6, 4)
        assert np.all(np.abs(weights.layers[0]) <= np.sqrt(2.0 / 14))
        assert np.all(np.abs(weights.layers[1]) <= np.sqrt(2.0 / 10))
        np.testing.assert_array_equal(weights.bias, np.zeros(10))
        assert weights.shapes == ((8, 6), (6, 4))

    def test_draws_w1_before_w2(self):
        rng = DeterministicRandomSource(5)
        weights = xavier_weights(rng, 3, 2, 2)
        replay = DeterministicRandomSource(5)
        first = replay.random()
        limit = np.sqrt(2.0 / 5)
        assert weights.layers[0][0] == pytest.approx((first - 0.5) * 2 * limit)

    def test_consumes_one_value_per_weight(self):
        rng = DeterministicRandomSource(5)
        expected = rng.fork()
        xavier_weights(rng, 8, 6, 4)
        for _ in range(8 * 6 + 6 * 4):
            expected.random()
        assert rng.getstate() == expected.getstate()

    def test_without_rng_weights_are_zero(self):
        weights = MLPModel(input_size=3, num_classes=2, hidden_size=2).get_weights()
        assert not np.any(weights.vectorize())


class TestWeights:
    """Test weight exchange"""

    def test_roundtrip(self, model):
        weights = model.get_weights(version=3)
        other = MLPModel(input_size=8, num_classes=4, hidden_size=6)
        other.set_weights(weights)
        assert other.get_weights().allclose(weights)
        assert other.get_weights().version == 3

    def test_training_does_not_touch_source_weights(self, model, blobs):
        weights = model.get_weights()
        before = weights.vectorize().copy()
        model.train(*blobs, epochs=1, rng=DeterministicRandomSource(1))
        np.testing.assert_array_equal(weights.vectorize(), before)
        assert not model.get_weights().allclose(weights)

    def test_rejects_wrong_architecture(self, model):
        with pytest.raises(MalformedModelError):
            model.set_weights(xavier_weights(DeterministicRandomSource(1), 8, 5, 4))

    def test_flower_parameters(self, model):
        params = model.get_parameters()
        assert [p.shape for p in params] == [(8, 6), (6,), (6, 4), (4,)]
        other = MLPModel(input_size=8, num_classes=4, hidden_size=6)
        other.set_parameters(params)
        assert other.get_weights().allclose(model.get_weights())

    def test_ndarrays_keep_layer_order_and_version(self, model):
        weights = model.get_weights()
        restored = ModelWeights.from_ndarrays(weights.to_ndarrays(), version=3)
        assert restored.shapes == ((8, 6), (6, 4))
        assert restored.version == 3
        np.testing.assert_array_equal(restored.vectorize(), weights.vectorize())

    def test_odd_parameter_list_is_malformed(self, model):
        with pytest.raises(MalformedModelError):
            ModelWeights.from_ndarrays(model.get_parameters()[:3])

    def test_weights_are_read_only(self, model):
        weights = model.get_weights()
        with pytest.raises(ValueError):
            weights.layers[0][0] = 1.0


class TestTraining:
    """Test SGD training"""

    def test_deterministic(self, blobs):
        results = []
        for _ in range(2):
            m = MLPModel(input_size=8, num_classes=4, hidden_size=6, rng=DeterministicRandomSource(42))
            metrics = m.train(*blobs, epochs=2, rng=DeterministicRandomSource(9))
            results.append((metrics, m.get_weights().vectorize()))
        assert results[0][0] == results[1][0]
        np.testing.assert_array_equal(results[0][1], results[1][1])

    def test_shuffle_stream_changes_result(self, blobs):
        a = MLPModel(input_size=8, num_classes=4, hidden_size=6, rng=DeterministicRandomSource(42))
        b = MLPModel(input_size=8, num_classes=4, hidden_size=6, rng=DeterministicRandomSource(42))
        a.train(*blobs, epochs=1, rng=DeterministicRandomSource(1))
        b.train(*blobs, epochs=1, rng=DeterministicRandomSource(2))
        assert not a.get_weights().allclose(b.get_weights())

    def test_metrics(self, model, blobs):
        metrics = model.train(*blobs, epochs=1, rng=DeterministicRandomSource(1))
        assert set(metrics) == {"loss", "accuracy", "gradient_norm"}
        assert metrics["loss"] > 0
        assert metrics["gradient_norm"] > 0
        assert 0.0 <= metrics["accuracy"] <= 1.0

    def test_learns_separable_blobs(self, tiny_provider):
        partition = tiny_provider.load_partition("client-0", 200, non_iid=False, seed=1)
        model = MLPModel(input_size=8, num_classes=4, hidden_size=16, rng=DeterministicRandomSource(3))
        model.train(
            partition.X_train,
            partition.y_train,
            epochs=10,
            rng=DeterministicRandomSource(4),
            learning_rate=0.1,
        )
        X_test, y_test = tiny_provider.load_centralized_test()
        assert model.evaluate(X_test, y_test)["accuracy"] > 0.5

    def test_learning_rate_override(self, blobs):
        a = MLPModel(input_size=8, num_classes=4, hidden_size=6, rng=DeterministicRandomSource(42))
        b = MLPModel(input_size=8, num_classes=4, hidden_size=6, rng=DeterministicRandomSource(42))
        a.train(*blobs, epochs=1, rng=DeterministicRandomSource(1))
        b.train(*blobs, epochs=1, rng=DeterministicRandomSource(1), learning_rate=0.5)
        assert not a.get_weights().allclose(b.get_weights())

    def test_empty_data(self, model):
        before = model.get_weights()
        metrics = model.train(np.zeros((0, 8)), np.zeros((0, 4)), epochs=3)
        assert metrics == {"loss": 0.0, "accuracy": 0.0, "gradient_norm": 0.0}
        assert model.get_weights().allclose(before)
        assert model.evaluate(np.zeros((0, 8)), np.zeros((0, 4))) == {"accuracy": 0.0, "loss": 0.0}


class TestEvaluation:
    """Test evaluation and prediction"""

    def test_uniform_output_loss(self):
        model = MLPModel(input_size=3, num_classes=4, hidden_size=2)
        X = np.ones((5, 3))
        y = one_hot(np.array([0, 1, 2, 3, 0]), 4)
        result = model.evaluate(X, y)
        assert result["loss"] == pytest.approx(np.log(4))

    def test_predict_shape(self, model, blobs):
        X, _ = blobs
        predictions = model.predict(X)
        assert predictions.shape == (len(X),)
        assert predictions.max() < 4


class TestPersistence:
    """Test saving and loading"""

    def test_save_load(self, model, tmp_path):
        path = tmp_path / "model.joblib"
        model.learning_rate = 0.2
        model.save(str(path))

        loaded = MLPModel.load(str(path))
        assert loaded.get_weights().allclose(model.get_weights())
        assert loaded.learning_rate == 0.2
        assert loaded.input_shape == (8,)
        assert loaded.hidden_size == 6


def test_weights_dict_roundtrip(model):
    weights = model.get_weights(version=4)
    restored = ModelWeights.from_dict(weights.to_dict())
    assert restored.allclose(weights)
    assert restored.version == 4
    assert restored.shapes == weights.shapes
