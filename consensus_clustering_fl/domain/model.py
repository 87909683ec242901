"""Domain model abstractions: the immutable weight value object and the trainer interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from flwr.common import NDArrays

from consensus_clustering_fl.domain.errors import MalformedModelError
from consensus_clustering_fl.rng import DeterministicRandomSource

LayerShape = Tuple[int, int]


def _frozen(array: Any) -> np.ndarray:
    out = np.array(array, dtype=np.float64).ravel()
    out.flags.writeable = False
    return out


@dataclass(frozen=True, eq=False)
class ModelWeights:
    """Immutable snapshot of a dense network's parameters.

    Attributes:
        layers: One flat row-major weight array per dense layer
            (``W1`` is ``[input x hidden]``, ``W2`` is ``[hidden x output]``).
        bias: All layer biases concatenated (``b1 || b2``).
        shapes: ``(fan_in, fan_out)`` for every layer.
        version: Monotonic counter bumped by server aggregation.
    """

    layers: Tuple[np.ndarray, ...]
    bias: np.ndarray
    shapes: Tuple[LayerShape, ...]
    version: int = 0

    def __post_init__(self):
        object.__setattr__(self, "layers", tuple(_frozen(layer) for layer in self.layers))
        object.__setattr__(self, "bias", _frozen(self.bias))
        object.__setattr__(
            self, "shapes", tuple((int(a), int(b)) for a, b in self.shapes)
        )
        object.__setattr__(self, "version", int(self.version))

    @property
    def dimension(self) -> int:
        """Total number of scalar parameters."""
        return sum(layer.size for layer in self.layers) + self.bias.size

    @property
    def expected_dimension(self) -> int:
        """Number of parameters implied by ``shapes``."""
        return sum(a * b + b for a, b in self.shapes)

    def validate(self, shapes: Optional[Sequence[LayerShape]] = None) -> None:
        """Check that the arrays match the declared (or given) architecture.

        Raises:
            MalformedModelError: On any length mismatch.
        """
        target = tuple(tuple(s) for s in shapes) if shapes is not None else self.shapes
        if len(self.layers) != len(target):
            raise MalformedModelError(
                f"Expected {len(target)} layers, got {len(self.layers)}"
            )
        for idx, (layer, (fan_in, fan_out)) in enumerate(zip(self.layers, target)):
            if layer.size != fan_in * fan_out:
                raise MalformedModelError(
                    f"Layer {idx} has {layer.size} weights, expected {fan_in * fan_out}"
                )
        expected_bias = sum(fan_out for _, fan_out in target)
        if self.bias.size != expected_bias:
            raise MalformedModelError(
                f"Bias has {self.bias.size} entries, expected {expected_bias}"
            )

    def same_shape(self, other: "ModelWeights") -> bool:
        """Return True if ``other`` has identical layer and bias lengths."""
        return (
            len(self.layers) == len(other.layers)
            and all(a.size == b.size for a, b in zip(self.layers, other.layers))
            and self.bias.size == other.bias.size
        )

    def layer_biases(self) -> List[np.ndarray]:
        """Split ``bias`` into one array per layer."""
        out = []
        offset = 0
        for _, fan_out in self.shapes:
            out.append(self.bias[offset : offset + fan_out])
            offset += fan_out
        return out

    def vectorize(self) -> np.ndarray:
        """Flatten to a single vector ordered ``W1, b1, W2, b2, ...``."""
        parts = []
        for layer, layer_bias in zip(self.layers, self.layer_biases()):
            parts.append(layer)
            parts.append(layer_bias)
        return np.concatenate(parts) if parts else np.zeros(0)

    @classmethod
    def from_vector(
        cls,
        vector: np.ndarray,
        shapes: Sequence[LayerShape],
        version: int = 0,
    ) -> "ModelWeights":
        """Inverse of :meth:`vectorize`."""
        vector = np.asarray(vector, dtype=np.float64)
        layers, biases = [], []
        offset = 0
        for fan_in, fan_out in shapes:
            size = fan_in * fan_out
            layers.append(vector[offset : offset + size])
            offset += size
            biases.append(vector[offset : offset + fan_out])
            offset += fan_out
        if offset != vector.size:
            raise MalformedModelError(
                f"Vector has {vector.size} entries, architecture needs {offset}"
            )
        return cls(layers=tuple(layers), bias=np.concatenate(biases), shapes=shapes, version=version)

    def to_ndarrays(self) -> NDArrays:
        """Convert to Flower's parameter list ``[W1, b1, W2, b2, ...]`` (2-D weights)."""
        params: NDArrays = []
        for layer, layer_bias, (fan_in, fan_out) in zip(
            self.layers, self.layer_biases(), self.shapes
        ):
            params.append(layer.reshape(fan_in, fan_out).copy())
            params.append(layer_bias.copy())
        return params

    @classmethod
    def from_ndarrays(cls, params: NDArrays, version: int = 0) -> "ModelWeights":
        """Build from Flower's ``[W1, b1, W2, b2, ...]`` parameter list."""
        if len(params) % 2 != 0:
            raise MalformedModelError("Parameter list must alternate weights and biases")
        weights = params[0::2]
        biases = params[1::2]
        shapes = [tuple(np.asarray(w).shape) for w in weights]
        return cls(
            layers=tuple(np.asarray(w).ravel() for w in weights),
            bias=np.concatenate([np.asarray(b).ravel() for b in biases]),
            shapes=shapes,
            version=version,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain-Python representation for experiment snapshots."""
        return {
            "layers": [layer.tolist() for layer in self.layers],
            "bias": self.bias.tolist(),
            "shapes": [list(s) for s in self.shapes],
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelWeights":
        return cls(
            layers=tuple(np.asarray(layer) for layer in data["layers"]),
            bias=np.asarray(data["bias"]),
            shapes=tuple(tuple(s) for s in data["shapes"]),
            version=data.get("version", 0),
        )

    def allclose(self, other: "ModelWeights", atol: float = 0.0) -> bool:
        """Parameter-wise comparison (version is ignored)."""
        if not self.same_shape(other):
            return False
        return bool(np.allclose(self.vectorize(), other.vectorize(), rtol=0.0, atol=atol))


class Model(ABC):
    """Abstract base class for locally trained models.

    A model owns mutable working parameters during training and exchanges
    immutable :class:`ModelWeights` with the rest of the simulation.
    """

    @abstractmethod
    def get_weights(self, version: int = 0) -> ModelWeights:
        """Snapshot the current parameters.

        Args:
            version: Version counter to stamp on the snapshot.

        Returns:
            Immutable weights.
        """
        pass

    @abstractmethod
    def set_weights(self, weights: ModelWeights) -> None:
        """Load parameters from a snapshot (the snapshot is copied, never aliased).

        Args:
            weights: Weights to load.
        """
        pass

    def get_parameters(self) -> NDArrays:
        """Extract model parameters as a list of numpy arrays."""
        return self.get_weights().to_ndarrays()

    def set_parameters(self, params: NDArrays) -> None:
        """Set model parameters from a list of numpy arrays."""
        self.set_weights(ModelWeights.from_ndarrays(params))

    @abstractmethod
    def train(
        self,
        X: np.ndarray,
        y: np.ndarray,
        epochs: int = 1,
        rng: Optional[DeterministicRandomSource] = None,
        **kwargs,
    ) -> Dict[str, float]:
        """Train the model on the given data.

        Args:
            X: Training features.
            y: One-hot training labels.
            epochs: Number of training epochs.
            rng: Stream used to shuffle the sample order.
            **kwargs: Additional training arguments.

        Returns:
            Dictionary of training metrics (loss, accuracy, gradient_norm).
        """
        pass

    @abstractmethod
    def evaluate(self, X: np.ndarray, y: np.ndarray, **kwargs) -> Dict[str, float]:
        """Evaluate the model on the given data.

        Returns:
            Dictionary with ``loss`` and ``accuracy``.
        """
        pass

    @abstractmethod
    def predict(self, X: np.ndarray) -> np.ndarray:
        """Return predicted class indices."""
        pass

    @property
    @abstractmethod
    def num_classes(self) -> int:
        """Return the number of output classes."""
        pass

    @property
    @abstractmethod
    def input_shape(self) -> tuple:
        """Return the expected input shape."""
        pass

    @abstractmethod
    def save(self, path: str) -> None:
        """Save the model to disk."""
        pass

    @classmethod
    @abstractmethod
    def load(cls, path: str) -> "Model":
        """Load a model from disk."""
        pass
