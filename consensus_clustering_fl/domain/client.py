"""Simulated client state."""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Optional

from consensus_clustering_fl.config import ClientAggregationMethod
from consensus_clustering_fl.domain.model import ModelWeights

HISTORY_LENGTH = 3

CLIENT_NAMES = [
    "Hospital Alpha",
    "Clinic Beta",
    "Lab Gamma",
    "Center Delta",
    "Institute Epsilon",
    "Facility Zeta",
    "Station Eta",
    "Node Theta",
    "Unit Iota",
    "Branch Kappa",
    "Site Lambda",
    "Post Mu",
]


class ClientStatus(Enum):
    """Lifecycle of a client within a round."""

    IDLE = "idle"
    RECEIVING = "receiving"
    TRAINING = "training"
    SENDING = "sending"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def selectable(self) -> bool:
        """Not taking part in a round that is still running."""
        return self in (ClientStatus.IDLE, ClientStatus.COMPLETED, ClientStatus.ERROR)


def _history() -> Deque[ModelWeights]:
    return deque(maxlen=HISTORY_LENGTH)


@dataclass
class ClientRecord:
    """Identity, data size and model history of one simulated client.

    Histories are most-recent-first and bounded to three entries.
    """

    client_id: str
    name: str
    data_size: int
    status: ClientStatus = ClientStatus.IDLE
    client_aggregation: ClientAggregationMethod = ClientAggregationMethod.NONE
    learning_rate: Optional[float] = None
    local_epochs: Optional[int] = None
    last_local_model: Optional[ModelWeights] = None
    local_model_history: Deque[ModelWeights] = field(default_factory=_history)
    received_model_history: Deque[ModelWeights] = field(default_factory=_history)
    gradient_norm_history: Deque[float] = field(
        default_factory=lambda: deque(maxlen=HISTORY_LENGTH)
    )
    local_loss: float = 0.0
    local_accuracy: float = 0.0
    local_test_accuracy: float = 0.0
    rounds_participated: int = 0

    def push_received(self, model: ModelWeights) -> None:
        self.received_model_history.appendleft(model)

    def push_local(self, model: ModelWeights) -> None:
        self.last_local_model = model
        self.local_model_history.appendleft(model)

    def push_gradient_norm(self, norm: float) -> None:
        self.gradient_norm_history.appendleft(float(norm))


def make_client(index: int, data_size: int, **overrides) -> ClientRecord:
    """Create the client ``client-<index>`` with its display name."""
    name = CLIENT_NAMES[index % len(CLIENT_NAMES)]
    return ClientRecord(client_id=f"client-{index}", name=name, data_size=data_size, **overrides)
