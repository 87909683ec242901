"""Infrastructure: the MLP classifier and the model registry."""

from __future__ import annotations

from typing import Dict, Optional, Type

import joblib
import numpy as np
from sklearn.metrics import accuracy_score, log_loss

from consensus_clustering_fl.domain.model import Model, ModelWeights
from consensus_clustering_fl.rng import DeterministicRandomSource


# name -> Model subclass
_MODEL_REGISTRY: Dict[str, Type[Model]] = {}


def register_model(name: str):
    """Class decorator adding a Model implementation to the registry."""

    def decorator(cls: Type[Model]) -> Type[Model]:
        _MODEL_REGISTRY[name.lower()] = cls
        return cls

    return decorator


def get_model_class(name: str) -> Type[Model]:
    """Look up a registered model implementation.

    Args:
        name: Model name (case-insensitive).

    Returns:
        Model class.

    Raises:
        ValueError: If model name is not found.
    """
    name_lower = name.lower()
    if name_lower not in _MODEL_REGISTRY:
        available = ", ".join(_MODEL_REGISTRY.keys())
        raise ValueError(f"Unknown model: {name}. Available: {available}")
    return _MODEL_REGISTRY[name_lower]


def list_available_models() -> list[str]:
    """Names of every registered model."""
    return list(_MODEL_REGISTRY.keys())


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


def _softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits, axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=-1, keepdims=True)


def xavier_weights(
    rng: DeterministicRandomSource,
    input_size: int,
    hidden_size: int,
    num_classes: int,
    version: int = 0,
) -> ModelWeights:
    """Uniform Xavier initialization drawn from ``rng``.

    ``W1`` is drawn first, then ``W2``, both row-major, each entry
    ``(u - 0.5) * 2 * sqrt(2 / (fan_in + fan_out))``. Biases start at zero.
    """
    limit_hidden = np.sqrt(2.0 / (input_size + hidden_size))
    limit_output = np.sqrt(2.0 / (hidden_size + num_classes))
    W1 = rng.uniform_array(input_size * hidden_size, -limit_hidden, limit_hidden)
    W2 = rng.uniform_array(hidden_size * num_classes, -limit_output, limit_output)
    return ModelWeights(
        layers=(W1, W2),
        bias=np.zeros(hidden_size + num_classes),
        shapes=((input_size, hidden_size), (hidden_size, num_classes)),
        version=version,
    )


@register_model("mlp")
class MLPModel(Model):
    """One-hidden-layer perceptron trained with per-sample SGD.

    Sigmoid hidden units, softmax output, cross-entropy loss. Training is
    pure numpy so that a given start model, data set and shuffle stream
    always produce the same weights.
    """

    def __init__(
        self,
        input_size: int = 784,
        num_classes: int = 10,
        hidden_size: int = 128,
        learning_rate: float = 0.01,
        rng: Optional[DeterministicRandomSource] = None,
    ):
        """Initialize the MLP model.

        Args:
            input_size: Number of input features.
            num_classes: Number of output classes.
            hidden_size: Number of hidden units.
            learning_rate: SGD step size.
            rng: Stream for Xavier initialization; zero weights when omitted.
        """
        self._input_size = input_size
        self._num_classes = num_classes
        self._hidden_size = hidden_size
        self.learning_rate = learning_rate

        if rng is not None:
            self.set_weights(xavier_weights(rng, input_size, hidden_size, num_classes))
        else:
            self.W1 = np.zeros((input_size, hidden_size))
            self.b1 = np.zeros(hidden_size)
            self.W2 = np.zeros((hidden_size, num_classes))
            self.b2 = np.zeros(num_classes)
            self._version = 0

    def get_weights(self, version: Optional[int] = None) -> ModelWeights:
        return ModelWeights(
            layers=(self.W1, self.W2),
            bias=np.concatenate([self.b1, self.b2]),
            shapes=(
                (self._input_size, self._hidden_size),
                (self._hidden_size, self._num_classes),
            ),
            version=self._version if version is None else version,
        )

    def set_weights(self, weights: ModelWeights) -> None:
        weights.validate(
            (
                (self._input_size, self._hidden_size),
                (self._hidden_size, self._num_classes),
            )
        )
        b1, b2 = weights.layer_biases()
        self.W1 = weights.layers[0].reshape(self._input_size, self._hidden_size).copy()
        self.W2 = weights.layers[1].reshape(self._hidden_size, self._num_classes).copy()
        self.b1 = b1.copy()
        self.b2 = b2.copy()
        self._version = weights.version

    def _forward(self, X: np.ndarray):
        hidden = _sigmoid(X @ self.W1 + self.b1)
        return hidden, _softmax(hidden @ self.W2 + self.b2)

    def _train_step(self, x: np.ndarray, target: np.ndarray, lr: float):
        """One SGD step on a single sample; returns (loss, gradient norm)."""
        hidden, output = self._forward(x)
        loss = -float(np.sum(target * np.log(np.clip(output, 1e-7, 1 - 1e-7))))

        d_output = output - target
        d_hidden = (self.W2 @ d_output) * hidden * (1.0 - hidden)

        # ||outer(a, b)||^2 == ||a||^2 * ||b||^2
        grad_sq = (
            float(x @ x) * float(d_hidden @ d_hidden)
            + float(d_hidden @ d_hidden)
            + float(hidden @ hidden) * float(d_output @ d_output)
            + float(d_output @ d_output)
        )

        self.W2 -= lr * np.outer(hidden, d_output)
        self.b2 -= lr * d_output
        self.W1 -= lr * np.outer(x, d_hidden)
        self.b1 -= lr * d_hidden
        return loss, float(np.sqrt(grad_sq))

    def train(
        self,
        X: np.ndarray,
        y: np.ndarray,
        epochs: int = 1,
        rng: Optional[DeterministicRandomSource] = None,
        **kwargs,
    ) -> dict[str, float]:
        """Per-sample SGD, reshuffling the samples every epoch.

        Returns:
            ``loss`` (mean sample loss of the last epoch), ``accuracy`` on
            the training data after the last epoch, and ``gradient_norm``
            (mean per-sample gradient L2 norm of the last epoch).
        """
        lr = kwargs.get("learning_rate", self.learning_rate)
        rng = rng or DeterministicRandomSource()
        X = np.asarray(X, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        n = len(X)
        if n == 0:
            return {"loss": 0.0, "accuracy": 0.0, "gradient_norm": 0.0}

        loss = 0.0
        grad_norm = 0.0
        for _ in range(epochs):
            total_loss = 0.0
            total_norm = 0.0
            for idx in rng.permutation(n):
                sample_loss, sample_norm = self._train_step(X[idx], y[idx], lr)
                total_loss += sample_loss
                total_norm += sample_norm
            loss = total_loss / n
            grad_norm = total_norm / n

        return {
            "loss": loss,
            "accuracy": self.evaluate(X, y)["accuracy"],
            "gradient_norm": grad_norm,
        }

    def evaluate(
        self,
        X: np.ndarray,
        y: np.ndarray,
        **kwargs,
    ) -> dict[str, float]:
        """Evaluate the model on one-hot labels."""
        if len(X) == 0:
            return {"accuracy": 0.0, "loss": 0.0}
        _, proba = self._forward(np.asarray(X, dtype=np.float64))
        y_true = np.argmax(y, axis=1)
        accuracy = accuracy_score(y_true, np.argmax(proba, axis=1))
        loss = log_loss(y_true, proba, labels=np.arange(self._num_classes))
        return {
            "accuracy": float(accuracy),
            "loss": float(loss),
        }

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Make predictions."""
        _, proba = self._forward(np.asarray(X, dtype=np.float64))
        return np.argmax(proba, axis=1)

    @property
    def num_classes(self) -> int:
        return self._num_classes

    @property
    def input_shape(self) -> tuple:
        return (self._input_size,)

    @property
    def hidden_size(self) -> int:
        return self._hidden_size

    def save(self, path: str) -> None:
        """Save model to disk."""
        joblib.dump(
            {
                "weights": self.get_weights().to_dict(),
                "learning_rate": self.learning_rate,
            },
            path,
        )

    @classmethod
    def load(cls, path: str) -> "MLPModel":
        """Restore a model written by :meth:`save`."""
        state = joblib.load(path)
        weights = ModelWeights.from_dict(state["weights"])
        (input_size, hidden_size), (_, num_classes) = weights.shapes
        model = cls(
            input_size=input_size,
            num_classes=num_classes,
            hidden_size=hidden_size,
            learning_rate=state.get("learning_rate", 0.01),
        )
        model.set_weights(weights)
        return model
