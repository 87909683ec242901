"""Domain dataset abstraction: the per-client data partition provider."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np


def one_hot(labels: np.ndarray, num_classes: int) -> np.ndarray:
    """Encode integer labels as a ``[n, num_classes]`` float matrix."""
    labels = np.asarray(labels, dtype=np.int64)
    encoded = np.zeros((labels.size, num_classes), dtype=np.float64)
    if labels.size:
        encoded[np.arange(labels.size), labels] = 1.0
    return encoded


@dataclass
class DataPartition:
    """A partition of data for a single federated learning client.

    Attributes:
        X_train: Training features, ``[n_train, input_size]``.
        y_train: One-hot training labels, ``[n_train, num_classes]``.
        X_test: Client-local test features.
        y_test: One-hot client-local test labels.
        client_id: Identifier of the owning client.
        num_classes: Number of unique classes in the dataset.
    """

    X_train: np.ndarray
    y_train: np.ndarray
    X_test: np.ndarray
    y_test: np.ndarray
    client_id: str
    num_classes: int

    @property
    def num_train_samples(self) -> int:
        """Rows in the local training split."""
        return len(self.X_train)

    @property
    def num_test_samples(self) -> int:
        """Rows in the local test split."""
        return len(self.X_test)

    @property
    def input_shape(self) -> tuple:
        """Return the shape of a single input sample."""
        return self.X_train.shape[1:]

    def label_histogram(self) -> np.ndarray:
        """Count of training samples per class."""
        return self.y_train.sum(axis=0).astype(np.int64)


def client_test_size(train_size: int) -> int:
    """Size of a client's personal test set: 20% of its training data, at least 50."""
    return max(50, int(train_size * 0.2))


class DataPartitionProvider(ABC):
    """Source of per-client training/test data.

    The simulator only relies on this interface; implementations decide
    where the samples come from and how non-IID skew is produced.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the dataset name."""
        pass

    @property
    @abstractmethod
    def num_classes(self) -> int:
        """How many labels the provider emits."""
        pass

    @property
    @abstractmethod
    def input_shape(self) -> tuple:
        """Feature shape of one sample, without the batch axis."""
        pass

    @property
    def input_size(self) -> int:
        """Return the flattened input size."""
        size = 1
        for dim in self.input_shape:
            size *= dim
        return size

    @abstractmethod
    def load_partition(
        self,
        client_id: str,
        num_samples: int,
        non_iid: bool,
        seed: int,
    ) -> DataPartition:
        """Load the data of one client.

        Args:
            client_id: Client identifier, ``client-<index>``.
            num_samples: Number of training samples to draw.
            non_iid: Whether to skew the label distribution per client.
            seed: Experiment seed; equal arguments must give equal partitions.

        Returns:
            DataPartition with train and test arrays for this client.
        """
        pass

    @abstractmethod
    def load_centralized_test(self) -> Tuple[np.ndarray, np.ndarray]:
        """Load the held-out test set used to evaluate the global model.

        Returns:
            Tuple of (X_test, one-hot y_test).
        """
        pass

    def get_class_labels(self) -> Optional[list[str]]:
        """Return human-readable class labels if available."""
        return None
