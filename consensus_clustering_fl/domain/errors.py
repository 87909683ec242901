"""Domain errors raised by the simulation core."""


class SimulationError(Exception):
    """Base class for errors raised while running an experiment."""


class InsufficientClientsError(SimulationError):
    """Raised when fewer idle clients are available than a round requires."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Not enough clients available. Required: {required}, Available: {available}"
        )


class AggregationError(SimulationError, ValueError):
    """Raised when an aggregation strategy receives no client updates."""


class MalformedModelError(SimulationError, ValueError):
    """Raised when model weights do not match the experiment architecture."""

    def __init__(self, message: str, client_id: str = ""):
        self.client_id = client_id
        super().__init__(message)
