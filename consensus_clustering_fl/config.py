"""
Configuration enums and the server configuration for the simulator.

Run configuration uses hyphenated keys (``num-server-rounds``,
``clustering-method``...), either as a dict or as a ``k=v k='s'`` string.
"""

import shlex
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class _ConfigEnum(Enum):
    """Enum parsed case-insensitively from its value."""

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value.lower() == lowered:
                    return member
        return None


class AggregationMethod(_ConfigEnum):
    """Server-side aggregation rules"""

    FEDAVG = "fedavg"
    FEDPROX = "fedprox"
    SIMPLE = "simple"
    MEDIAN = "median"


class ClientAggregationMethod(_ConfigEnum):
    """How a client blends a received model with its previous local model"""

    NONE = "none"
    FIFTY_FIFTY = "50-50"
    GRAVITY = "gravity"


class AssignmentMethod(_ConfigEnum):
    """Which model variant a client receives"""

    ONE_NN = "1NN"
    PROBABILISTIC = "probabilistic"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value.strip().lower() in ("probabiliste", "proba"):
            return cls.PROBABILISTIC
        return super()._missing_(value)


class ClusteringMethod(_ConfigEnum):
    """Client clustering algorithms"""

    LOUVAIN = "louvain"
    KMEANS = "kmeans"
    LEIDEN = "leiden"
    SPECTRAL = "spectral"

    @property
    def is_graph_based(self) -> bool:
        return self in (ClusteringMethod.LOUVAIN, ClusteringMethod.LEIDEN)


class DistanceMetric(_ConfigEnum):
    """Distance between flattened model vectors"""

    L1 = "l1"
    L2 = "l2"
    COSINE = "cosine"


class DistanceReference(_ConfigEnum):
    """Vector subtracted from client models before measuring distances"""

    NONE = "none"
    GLOBAL = "global"


@dataclass(frozen=True)
class OverrideRule:
    """A per-client, per-round-window exception to a general policy.

    Applies to ``client_ids`` for rounds in ``[start_round, end_round)``.
    """

    client_ids: Tuple[str, ...] = ()
    start_round: int = 3
    end_round: int = 10
    weight: float = 1.0

    def applies(self, client_id: str, server_round: int) -> bool:
        return client_id in self.client_ids and self.start_round <= server_round < self.end_round

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["client_ids"] = list(self.client_ids)
        return data


# Defaults for every key read by ServerConfig.from_run_config
DEFAULT_RUN_CONFIG: Dict[str, Any] = {
    "aggregation-method": "fedavg",
    "client-aggregation": "none",
    "assignment-method": "1NN",
    "clustering-method": "louvain",
    "n-clusters": 0,
    "distance-metric": "cosine",
    "distance-reference": "none",
    "use-consensus": False,
    "consensus-runs": 20,
    "consensus-threshold": 0.6,
    "consensus-min-resolution": 0.5,
    "consensus-max-resolution": 2.5,
    "louvain-resolution": 2.0,
    "num-server-rounds": 10,
    "num-clients": 10,
    "clients-per-round": 5,
    "min-clients": 2,
    "local-epochs": 3,
    "learning-rate": 0.01,
    "hidden-size": 128,
    "seed": 42,
    "non-iid": True,
    "non-iid-mode": "pairs",
    "dataset": "synthetic",
    "probabilistic-max-round": 5,
    "adaptive-epochs": False,
    "training-workers": 1,
    "gravity-epsilon": 1.0,
    "gravity-override-clients": "",
    "gravity-override-start": 3,
    "gravity-override-end": 10,
    "gravity-override-weight": 1.0,
    "submission-override-clients": "",
    "submission-override-start": 3,
    "submission-override-end": 10,
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _client_list(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return tuple(str(v) for v in value)


def parse_run_config(text: str) -> Dict[str, Any]:
    """Parse a ``key=value key2='text'`` string into a dict.

    Unquoted values are read as bool, int or float when possible.
    """
    config: Dict[str, Any] = {}
    for token in shlex.split(text or ""):
        if "=" not in token:
            raise ValueError(f"Invalid run-config entry (expected key=value): {token}")
        key, raw = token.split("=", 1)
        config[key.strip()] = _coerce(raw)
    return config


def _coerce(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


@dataclass
class ServerConfig:
    """Server configuration: the sole tuning surface of an experiment."""

    # Strategies
    aggregation_method: AggregationMethod = AggregationMethod.FEDAVG
    client_aggregation_method: ClientAggregationMethod = ClientAggregationMethod.NONE
    assignment_method: AssignmentMethod = AssignmentMethod.ONE_NN
    clustering_method: ClusteringMethod = ClusteringMethod.LOUVAIN
    n_clusters: Optional[int] = None
    distance_metric: DistanceMetric = DistanceMetric.COSINE
    distance_reference: DistanceReference = DistanceReference.NONE

    # Consensus clustering
    use_consensus: bool = False
    consensus_runs: int = 20
    consensus_threshold: float = 0.6
    consensus_min_resolution: float = 0.5
    consensus_max_resolution: float = 2.5
    louvain_resolution: float = 2.0

    # Federation
    num_rounds: int = 10
    num_clients: int = 10
    clients_per_round: int = 5
    min_clients_required: int = 2
    seed: int = 42

    # Local training
    local_epochs: int = 3
    learning_rate: float = 0.01
    hidden_size: int = 128
    adaptive_epochs: bool = False
    training_workers: int = 1

    # Data
    dataset: str = "synthetic"
    non_iid: bool = True
    non_iid_mode: str = "pairs"

    # Assignment / client aggregation policies
    probabilistic_max_round: int = 5
    gravity_epsilon: float = 1.0
    gravity_override: Optional[OverrideRule] = None
    submission_override: Optional[OverrideRule] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.aggregation_method = AggregationMethod(self.aggregation_method)
        self.client_aggregation_method = ClientAggregationMethod(self.client_aggregation_method)
        self.assignment_method = AssignmentMethod(self.assignment_method)
        self.clustering_method = ClusteringMethod(self.clustering_method)
        self.distance_metric = DistanceMetric(self.distance_metric)
        self.distance_reference = DistanceReference(self.distance_reference)
        if self.n_clusters is not None and int(self.n_clusters) <= 0:
            self.n_clusters = None
        if isinstance(self.gravity_override, dict):
            self.gravity_override = _rule_from_dict(self.gravity_override)
        if isinstance(self.submission_override, dict):
            self.submission_override = _rule_from_dict(self.submission_override)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "ServerConfig":
        """Create config from a dictionary of field names."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config_dict.items() if k in names})

    @classmethod
    def from_run_config(cls, run_config: Dict[str, Any]) -> "ServerConfig":
        """Create config from hyphenated run-config keys; missing keys use defaults."""
        unknown = {k: v for k, v in run_config.items() if k not in DEFAULT_RUN_CONFIG}
        rc = {**DEFAULT_RUN_CONFIG, **run_config}

        gravity_clients = _client_list(rc["gravity-override-clients"])
        submission_clients = _client_list(rc["submission-override-clients"])

        return cls(
            aggregation_method=rc["aggregation-method"],
            client_aggregation_method=rc["client-aggregation"],
            assignment_method=rc["assignment-method"],
            clustering_method=rc["clustering-method"],
            n_clusters=int(rc["n-clusters"]) or None,
            distance_metric=rc["distance-metric"],
            distance_reference=rc["distance-reference"],
            use_consensus=_as_bool(rc["use-consensus"]),
            consensus_runs=int(rc["consensus-runs"]),
            consensus_threshold=float(rc["consensus-threshold"]),
            consensus_min_resolution=float(rc["consensus-min-resolution"]),
            consensus_max_resolution=float(rc["consensus-max-resolution"]),
            louvain_resolution=float(rc["louvain-resolution"]),
            num_rounds=int(rc["num-server-rounds"]),
            num_clients=int(rc["num-clients"]),
            clients_per_round=int(rc["clients-per-round"]),
            min_clients_required=int(rc["min-clients"]),
            seed=int(rc["seed"]),
            local_epochs=int(rc["local-epochs"]),
            learning_rate=float(rc["learning-rate"]),
            hidden_size=int(rc["hidden-size"]),
            adaptive_epochs=_as_bool(rc["adaptive-epochs"]),
            training_workers=int(rc["training-workers"]),
            dataset=str(rc["dataset"]),
            non_iid=_as_bool(rc["non-iid"]),
            non_iid_mode=str(rc["non-iid-mode"]),
            probabilistic_max_round=int(rc["probabilistic-max-round"]),
            gravity_epsilon=float(rc["gravity-epsilon"]),
            gravity_override=OverrideRule(
                client_ids=gravity_clients,
                start_round=int(rc["gravity-override-start"]),
                end_round=int(rc["gravity-override-end"]),
                weight=float(rc["gravity-override-weight"]),
            )
            if gravity_clients
            else None,
            submission_override=OverrideRule(
                client_ids=submission_clients,
                start_round=int(rc["submission-override-start"]),
                end_round=int(rc["submission-override-end"]),
            )
            if submission_clients
            else None,
            extra=unknown,
        )

    def validate(self) -> None:
        """Validate numeric constraints.

        Raises:
            ValueError: On the first violated constraint.
        """
        if self.num_clients <= 0:
            raise ValueError("num_clients must be positive")
        if self.clients_per_round <= 0:
            raise ValueError("clients_per_round must be positive")
        if self.min_clients_required < 1:
            raise ValueError("min_clients_required must be at least 1")
        if self.num_rounds < 0:
            raise ValueError("num_rounds must be non-negative")
        if self.local_epochs <= 0:
            raise ValueError("local_epochs must be positive")
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if self.hidden_size <= 0:
            raise ValueError("hidden_size must be positive")
        if self.training_workers < 1:
            raise ValueError("training_workers must be at least 1")
        if self.consensus_runs < 2:
            raise ValueError("consensus_runs must be at least 2")
        if not 0.0 < self.consensus_threshold <= 1.0:
            raise ValueError("consensus_threshold must be in (0, 1]")
        if self.gravity_epsilon <= 0:
            raise ValueError("gravity_epsilon must be positive")
        if self.non_iid_mode not in ("pairs", "groups"):
            raise ValueError(f"Unknown non-IID mode: {self.non_iid_mode}")

    def to_dict(self) -> Dict[str, Any]:
        """Field-name dict with enum values, suitable for snapshots."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, OverrideRule):
                value = value.to_dict()
            data[f.name] = value
        return data

    def to_params(self) -> Dict[str, Any]:
        """Flat parameter dict for experiment tracking."""
        params = self.to_dict()
        params.pop("extra", None)
        for key in ("gravity_override", "submission_override"):
            params[key] = str(params[key]) if params[key] else "none"
        params["n_clusters"] = params["n_clusters"] or "auto"
        return params


def _rule_from_dict(data: Dict[str, Any]) -> OverrideRule:
    return OverrideRule(
        client_ids=_client_list(data.get("client_ids", ())),
        start_round=int(data.get("start_round", 3)),
        end_round=int(data.get("end_round", 10)),
        weight=float(data.get("weight", 1.0)),
    )
