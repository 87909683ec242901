"""Infrastructure: partition providers and the dataset registry."""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Dict, Optional, Tuple, Type

import numpy as np
from flwr_datasets import FederatedDataset
from flwr_datasets.partitioner import IidPartitioner

from consensus_clustering_fl.domain.dataset import (
    DataPartition,
    DataPartitionProvider,
    client_test_size,
    one_hot,
)

logger = logging.getLogger(__name__)

PRIMARY_LABEL_FRACTION = 0.7


# name -> DatasetProvider subclass
_DATASET_REGISTRY: Dict[str, Type[DataPartitionProvider]] = {}


def register_dataset(name: str):
    """Class decorator adding a DatasetProvider to the registry."""

    def decorator(cls: Type[DataPartitionProvider]) -> Type[DataPartitionProvider]:
        _DATASET_REGISTRY[name.lower()] = cls
        return cls

    return decorator


def get_dataset_class(name: str) -> Type[DataPartitionProvider]:
    """Look up a registered dataset provider.

    Args:
        name: Dataset name (case-insensitive).

    Returns:
        Dataset class.

    Raises:
        ValueError: If dataset name is not found.
    """
    name_lower = name.lower()
    if name_lower not in _DATASET_REGISTRY:
        available = ", ".join(_DATASET_REGISTRY.keys())
        raise ValueError(f"Unknown dataset: {name}. Available: {available}")
    return _DATASET_REGISTRY[name_lower]


def list_available_datasets() -> list[str]:
    """Names of every registered dataset."""
    return list(_DATASET_REGISTRY.keys())


def client_index(client_id: str) -> int:
    """Numeric index of a ``client-<n>`` id; other ids hash to a stable index."""
    prefix, _, suffix = client_id.rpartition("-")
    if prefix and suffix.isdigit():
        return int(suffix)
    h = 7
    for ch in client_id:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


def label_group(index: int, mode: str = "pairs") -> int:
    """Group of clients sharing a primary label.

    ``pairs``: clients (0, 1), (2, 3), ...; ``groups``: clients 0-2, 3-5
    and 6 onward.
    """
    if mode == "groups":
        if index <= 2:
            return 0
        if index <= 5:
            return 1
        return 2
    return index // 2


def sample_label_skewed(
    labels: np.ndarray,
    num_samples: int,
    primary_label: Optional[int],
    rng: np.random.Generator,
) -> np.ndarray:
    """Indices of a client subset.

    With a primary label, 70% of the samples are drawn from that label and
    the remainder from the whole pool; without one, the subset is uniform.
    """
    if primary_label is None:
        return rng.permutation(len(labels))[:num_samples]

    primary_count = int(num_samples * PRIMARY_LABEL_FRACTION)
    primary = rng.permutation(np.flatnonzero(labels == primary_label))[:primary_count]
    rest = rng.permutation(len(labels))[: num_samples - len(primary)]
    return np.concatenate([primary, rest]).astype(np.int64)


class LabelSkewDataset(DataPartitionProvider):
    """Base class for providers that cut client subsets from in-memory pools.

    Subclasses implement :meth:`_load_pools`; this class handles non-IID
    label skew and the per-client test sets.

    Args:
        mode: ``pairs`` or ``groups`` grouping for the primary label.
    """

    def __init__(self, mode: str = "pairs"):
        self.mode = mode
        self._pools: Optional[Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]] = None

    @abstractmethod
    def _load_pools(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Return ``(X_train, labels_train, X_test, labels_test)``."""
        pass

    def _ensure_initialized(self):
        if self._pools is None:
            self._pools = self._load_pools()
            logger.info(
                "Loaded %s pools: %d train / %d test samples",
                self.name,
                len(self._pools[1]),
                len(self._pools[3]),
            )
        return self._pools

    def primary_label(self, client_id: str) -> int:
        return label_group(client_index(client_id), self.mode) % self.num_classes

    def load_partition(
        self,
        client_id: str,
        num_samples: int,
        non_iid: bool = True,
        seed: int = 42,
    ) -> DataPartition:
        X_train, y_train, X_test, y_test = self._ensure_initialized()
        index = client_index(client_id)
        primary = self.primary_label(client_id) if non_iid else None

        train_rng = np.random.default_rng([seed, index, 0])
        test_rng = np.random.default_rng([seed, index, 1])
        train_idx = sample_label_skewed(y_train, num_samples, primary, train_rng)
        test_idx = sample_label_skewed(y_test, client_test_size(num_samples), primary, test_rng)

        return DataPartition(
            X_train=X_train[train_idx],
            y_train=one_hot(y_train[train_idx], self.num_classes),
            X_test=X_test[test_idx],
            y_test=one_hot(y_test[test_idx], self.num_classes),
            client_id=client_id,
            num_classes=self.num_classes,
        )

    def load_centralized_test(self) -> Tuple[np.ndarray, np.ndarray]:
        _, _, X_test, y_test = self._ensure_initialized()
        return X_test, one_hot(y_test, self.num_classes)


@register_dataset("synthetic")
class SyntheticDataset(LabelSkewDataset):
    """Gaussian class blobs, generated from a fixed seed.

    Every class has its own random center; samples are the center plus
    isotropic noise. Needs no download, which keeps tests fast.
    """

    def __init__(
        self,
        input_size: int = 64,
        num_classes: int = 10,
        train_per_class: int = 300,
        test_per_class: int = 60,
        noise: float = 1.0,
        data_seed: int = 0,
        mode: str = "pairs",
    ):
        super().__init__(mode=mode)
        self._input_size = input_size
        self._num_classes = num_classes
        self.train_per_class = train_per_class
        self.test_per_class = test_per_class
        self.noise = noise
        self.data_seed = data_seed

    @property
    def name(self) -> str:
        return "synthetic"

    @property
    def num_classes(self) -> int:
        return self._num_classes

    @property
    def input_shape(self) -> tuple:
        return (self._input_size,)

    def _load_pools(self):
        rng = np.random.default_rng(self.data_seed)
        centers = rng.normal(0.0, 2.0, size=(self._num_classes, self._input_size))

        def blobs(per_class: int):
            labels = np.repeat(np.arange(self._num_classes), per_class)
            X = centers[labels] + rng.normal(0.0, self.noise, size=(len(labels), self._input_size))
            return X, labels

        X_train, y_train = blobs(self.train_per_class)
        X_test, y_test = blobs(self.test_per_class)
        return X_train, y_train, X_test, y_test


@register_dataset("mnist")
class MNISTDataset(LabelSkewDataset):
    """MNIST digits loaded through Flower Datasets.

    The whole train split is loaded as a single partition and client
    subsets are cut from it with the label skew of :class:`LabelSkewDataset`.
    """

    def __init__(
        self,
        mode: str = "pairs",
        dataset_name: str = "ylecun/mnist",
        image_key: str = "image",
        label_key: str = "label",
    ):
        super().__init__(mode=mode)
        self._dataset_name = dataset_name
        self._image_key = image_key
        self._label_key = label_key
        self._fds: Optional[FederatedDataset] = None

    @property
    def name(self) -> str:
        return "mnist"

    @property
    def num_classes(self) -> int:
        return 10

    @property
    def input_shape(self) -> tuple:
        return (28, 28)

    def get_class_labels(self) -> list[str]:
        return [str(i) for i in range(10)]

    def _extract_features(self, split_data) -> tuple[np.ndarray, np.ndarray]:
        """Flatten images and scale pixels to [0, 1]."""
        X = np.array([np.array(img).flatten() for img in split_data[self._image_key]])
        y = np.array(split_data[self._label_key], dtype=np.int64)
        return X.astype(np.float64) / 255.0, y

    def _load_pools(self):
        if self._fds is None:
            self._fds = FederatedDataset(
                dataset=self._dataset_name,
                partitioners={"train": IidPartitioner(num_partitions=1)},
            )
        X_train, y_train = self._extract_features(self._fds.load_partition(0, "train"))
        X_test, y_test = self._extract_features(self._fds.load_split("test"))
        return X_train, y_train, X_test, y_test
