"""Factory module for creating datasets, models and orchestrators from configuration."""

import inspect
from typing import Any, Dict, Optional, Sequence, Union

from consensus_clustering_fl.config import ServerConfig, parse_run_config
from consensus_clustering_fl.domain.dataset import DataPartitionProvider
from consensus_clustering_fl.domain.model import Model
from consensus_clustering_fl.infrastructure.aggregation import list_available_aggregations
from consensus_clustering_fl.infrastructure.client_aggregation import (
    list_available_client_aggregations,
)
from consensus_clustering_fl.infrastructure.datasets import (
    get_dataset_class,
    list_available_datasets,
)
from consensus_clustering_fl.infrastructure.models import (
    get_model_class,
    list_available_models,
)
from consensus_clustering_fl.orchestrator import RoundOrchestrator
from consensus_clustering_fl.rng import DeterministicRandomSource
from consensus_clustering_fl.tracking import RoundMetricsSink


def _accepted_kwargs(cls, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Filter kwargs to only those accepted by ``cls.__init__``."""
    sig = inspect.signature(cls.__init__)
    valid_params = set(sig.parameters.keys()) - {"self"}
    return {k: v for k, v in kwargs.items() if k in valid_params}


def create_dataset(name: str, **kwargs) -> DataPartitionProvider:
    """Instantiate a registered dataset provider.

    Args:
        name: Dataset name (e.g., 'synthetic', 'mnist').
        **kwargs: Constructor arguments; unknown ones are ignored.

    Returns:
        Configured dataset instance.
    """
    dataset_cls = get_dataset_class(name)
    return dataset_cls(**_accepted_kwargs(dataset_cls, kwargs))


def create_model(
    name: str,
    dataset: DataPartitionProvider,
    hidden_size: int = 128,
    learning_rate: float = 0.01,
    rng: Optional[DeterministicRandomSource] = None,
) -> Model:
    """Instantiate a model sized to the given dataset.

    Args:
        name: Model name (e.g., 'mlp').
        dataset: Dataset the model will be trained on.
        hidden_size: Hidden layer width.
        learning_rate: Learning rate for training.
        rng: Stream for weight initialization.

    Returns:
        Configured model instance.
    """
    model_cls = get_model_class(name)
    kwargs = {
        "input_size": dataset.input_size,
        "num_classes": dataset.num_classes,
        "hidden_size": hidden_size,
        "learning_rate": learning_rate,
        "rng": rng,
    }
    return model_cls(**_accepted_kwargs(model_cls, kwargs))


def create_orchestrator(
    config: Union[ServerConfig, Dict[str, Any], str],
    dataset: Optional[DataPartitionProvider] = None,
    model_name: str = "mlp",
    sinks: Optional[Sequence[RoundMetricsSink]] = None,
) -> RoundOrchestrator:
    """Build a ready-to-run orchestrator.

    Args:
        config: A ServerConfig, a hyphenated run-config dict, or the
            ``k=v k='s'`` string form.
        dataset: Data provider; created from ``config.dataset`` when omitted.
        model_name: Registered model name.
        sinks: Round metrics sinks.

    Returns:
        RoundOrchestrator instance.
    """
    if isinstance(config, str):
        config = parse_run_config(config)
    if isinstance(config, dict):
        config = ServerConfig.from_run_config(config)

    if dataset is None:
        dataset = create_dataset(config.dataset, mode=config.non_iid_mode)

    def model_factory(rng: Optional[DeterministicRandomSource] = None) -> Model:
        return create_model(
            model_name,
            dataset,
            hidden_size=config.hidden_size,
            learning_rate=config.learning_rate,
            rng=rng,
        )

    return RoundOrchestrator(config, dataset, model_factory=model_factory, sinks=sinks)


def print_available_options() -> None:
    """Print available models, datasets and aggregation rules."""
    print("Available models:", ", ".join(list_available_models()))
    print("Available datasets:", ", ".join(list_available_datasets()))
    print("Available aggregations:", ", ".join(list_available_aggregations()))
    print("Available client aggregations:", ", ".join(list_available_client_aggregations()))
