"""
Tests for data partition providers.
"""

import numpy as np
import pytest

from consensus_clustering_fl.domain.dataset import client_test_size, one_hot
from consensus_clustering_fl.factory import create_dataset
from consensus_clustering_fl.infrastructure.datasets import (
    LabelSkewDataset,
    MNISTDataset,
    SyntheticDataset,
    client_index,
    get_dataset_class,
    label_group,
    list_available_datasets,
    sample_label_skewed,
)


@pytest.fixture
def provider():
    return SyntheticDataset(input_size=8, num_classes=4, train_per_class=100, test_per_class=60)


class TestHelpers:
    """Test client indexing and label grouping"""

    @pytest.mark.parametrize("client_id, expected", [("client-0", 0), ("client-17", 17)])
    def test_client_index(self, client_id, expected):
        assert client_index(client_id) == expected

    def test_client_index_hash_is_stable(self):
        assert client_index("hospital") == client_index("hospital")
        assert client_index("hospital") != client_index("clinic")

    @pytest.mark.parametrize("index, expected", [(0, 0), (1, 0), (2, 1), (5, 2)])
    def test_pairs(self, index, expected):
        assert label_group(index, "pairs") == expected

    @pytest.mark.parametrize("index, expected", [(0, 0), (2, 0), (3, 1), (5, 1), (6, 2), (11, 2)])
    def test_groups(self, index, expected):
        assert label_group(index, "groups") == expected

    def test_client_test_size(self):
        assert client_test_size(100) == 50
        assert client_test_size(1000) == 200

    def test_one_hot(self):
        np.testing.assert_array_equal(one_hot(np.array([1, 0]), 3), [[0, 1, 0], [1, 0, 0]])

    def test_sample_label_skewed(self):
        labels = np.repeat(np.arange(5), 100)
        idx = sample_label_skewed(labels, 100, 3, np.random.default_rng(0))
        assert len(idx) == 100
        assert np.sum(labels[idx] == 3) >= 70

    def test_sample_uniform(self):
        labels = np.repeat(np.arange(5), 100)
        idx = sample_label_skewed(labels, 50, None, np.random.default_rng(0))
        assert len(np.unique(idx)) == 50


class TestSyntheticDataset:
    """Test the synthetic provider"""

    def test_shapes(self, provider):
        partition = provider.load_partition("client-3", 100, non_iid=True, seed=42)
        assert partition.X_train.shape == (100, 8)
        assert partition.y_train.shape == (100, 4)
        assert partition.num_test_samples == 50
        assert partition.client_id == "client-3"
        assert provider.input_size == 8

    def test_deterministic(self, provider):
        a = provider.load_partition("client-2", 120, non_iid=True, seed=7)
        b = SyntheticDataset(
            input_size=8, num_classes=4, train_per_class=100, test_per_class=60
        ).load_partition("client-2", 120, non_iid=True, seed=7)
        np.testing.assert_array_equal(a.X_train, b.X_train)
        np.testing.assert_array_equal(a.y_test, b.y_test)

    def test_seed_changes_partition(self, provider):
        a = provider.load_partition("client-2", 120, non_iid=True, seed=7)
        b = provider.load_partition("client-2", 120, non_iid=True, seed=8)
        assert not np.array_equal(a.X_train, b.X_train)

    @pytest.mark.parametrize("client_id, primary", [("client-0", 0), ("client-3", 1), ("client-5", 2)])
    def test_primary_label_dominates(self, provider, client_id, primary):
        partition = provider.load_partition(client_id, 100, non_iid=True, seed=42)
        histogram = partition.label_histogram()
        assert int(np.argmax(histogram)) == primary
        assert histogram[primary] >= 70

    def test_pair_partners_share_primary_label(self, provider):
        assert provider.primary_label("client-4") == provider.primary_label("client-5")
        assert provider.primary_label("client-4") != provider.primary_label("client-6")

    def test_groups_mode(self):
        provider = SyntheticDataset(input_size=4, num_classes=3, mode="groups")
        assert [provider.primary_label(f"client-{i}") for i in range(7)] == [0, 0, 0, 1, 1, 1, 2]

    def test_primary_label_wraps_around_classes(self, provider):
        assert provider.primary_label("client-8") == 0

    def test_iid_partition(self, provider):
        partition = provider.load_partition("client-0", 200, non_iid=False, seed=42)
        assert np.all(partition.label_histogram() > 20)

    def test_centralized_test_set(self, provider):
        X, y = provider.load_centralized_test()
        assert X.shape == (240, 8)
        np.testing.assert_array_equal(y.sum(axis=0), np.full(4, 60))


class TestRegistry:
    """Test dataset registration and creation"""

    def test_available(self):
        assert {"synthetic", "mnist"} <= set(list_available_datasets())

    def test_lookup(self):
        assert get_dataset_class("Synthetic") is SyntheticDataset
        assert get_dataset_class("mnist") is MNISTDataset

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown dataset"):
            get_dataset_class("cifar100")

    def test_create_dataset_ignores_unknown_kwargs(self):
        dataset = create_dataset("synthetic", input_size=5, mode="groups", batch_size=32)
        assert dataset.input_shape == (5,)
        assert dataset.mode == "groups"

    def test_mnist_metadata_without_download(self):
        dataset = MNISTDataset()
        assert dataset.num_classes == 10
        assert dataset.input_size == 784
        assert dataset.get_class_labels()[3] == "3"


class TestLabelSkewDataset:
    """Test the in-memory pool base class"""

    def test_pool_loading_is_abstract(self):
        assert "_load_pools" in LabelSkewDataset.__abstractmethods__
        with pytest.raises(TypeError):
            LabelSkewDataset()

    def test_subclass_without_pools_cannot_be_created(self):
        class NoPools(SyntheticDataset):
            _load_pools = LabelSkewDataset._load_pools

        with pytest.raises(TypeError):
            NoPools(input_size=4, num_classes=2)
