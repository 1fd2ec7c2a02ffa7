"""
Client setup rules for a training run.

The user picks how many simulated clients take part and how many samples
each one holds. The external service does not enforce any data volume
limit, so the cap is applied here, before the configuration is submitted.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import ConfigValidationError
from .training_state import TrainingConfiguration

MIN_DATA_SIZE = 100
MAX_DATA_SIZE = 2000
DATA_SIZE_STEP = 100
DEFAULT_DATA_SIZE = 1000


class ClientSpec(BaseModel):
    """One simulated client."""

    id: int = Field(..., ge=1)
    data_size: int = Field(DEFAULT_DATA_SIZE, ge=MIN_DATA_SIZE, le=MAX_DATA_SIZE)
    data_distribution: str = "normal"


class ClientSetup:
    """Mutable list of clients with the dashboard's data volume rules."""

    def __init__(
        self,
        clients: Optional[List[ClientSpec]] = None,
        max_clients: int = 5,
        max_total_data_size: int = 6000,
        high_load_data_size: int = 4000,
    ):
        self.max_clients = max_clients
        self.max_total_data_size = max_total_data_size
        self.high_load_data_size = high_load_data_size
        if clients is None:
            clients = [ClientSpec(id=1)]
        self._clients: List[ClientSpec] = list(clients)

    @property
    def clients(self) -> List[ClientSpec]:
        return list(self._clients)

    @property
    def total_data_size(self) -> int:
        return sum(c.data_size for c in self._clients)

    @property
    def is_high_load(self) -> bool:
        return self.total_data_size > self.high_load_data_size

    @property
    def exceeds_cap(self) -> bool:
        return self.total_data_size > self.max_total_data_size

    def add_client(self, data_size: int = DEFAULT_DATA_SIZE) -> ClientSpec:
        """Add a client.

        Raises:
            ConfigValidationError: Client limit reached, or the new total
                would exceed the data cap.
        """
        if len(self._clients) >= self.max_clients:
            raise ConfigValidationError(f"At most {self.max_clients} clients are supported")

        if self.total_data_size + data_size > self.max_total_data_size:
            raise ConfigValidationError(
                "Adding more clients would exceed recommended total data size"
            )

        next_id = max((c.id for c in self._clients), default=0) + 1
        client = ClientSpec(id=next_id, data_size=data_size)
        self._clients.append(client)
        return client

    def remove_client(self, client_id: int) -> bool:
        """Remove a client; the last remaining client cannot be removed."""
        if len(self._clients) <= 1:
            return False
        before = len(self._clients)
        self._clients = [c for c in self._clients if c.id != client_id]
        return len(self._clients) != before

    def set_data_size(self, client_id: int, data_size: int) -> Optional[str]:
        """Change a client's sample count.

        Sizes are snapped to the slider step. Returns a warning when the new
        total exceeds the cap (the change is still applied, submission is
        what gets blocked).
        """
        snapped = round(data_size / DATA_SIZE_STEP) * DATA_SIZE_STEP
        snapped = min(max(snapped, MIN_DATA_SIZE), MAX_DATA_SIZE)

        for i, client in enumerate(self._clients):
            if client.id == client_id:
                self._clients[i] = client.model_copy(update={"data_size": snapped})
                break
        else:
            raise KeyError(f"Unknown client {client_id}")

        if self.exceeds_cap:
            return "Warning: Large total data size may affect performance"
        return None

    def issues(self) -> List[str]:
        """All constraint violations, empty when the setup can be submitted."""
        problems = []
        if not self._clients:
            problems.append("At least one client is required")
        if len(self._clients) > self.max_clients:
            problems.append(f"At most {self.max_clients} clients are supported")
        if self.exceeds_cap:
            problems.append(
                "Total data size too large. Please reduce the number of samples or clients."
            )
        return problems

    def validate(self) -> None:
        """Raise ConfigValidationError if the setup cannot be submitted."""
        problems = self.issues()
        if problems:
            raise ConfigValidationError(problems[0], issues=problems)

    def to_configuration(
        self,
        local_epochs: int = 1,
        batch_size: int = 32,
        noise_multiplier: float = 1.0,
        l2_norm_clip: float = 1.0,
    ) -> TrainingConfiguration:
        """Validate and build the configuration to submit."""
        self.validate()
        return TrainingConfiguration(
            num_clients=len(self._clients),
            local_epochs=local_epochs,
            batch_size=batch_size,
            noise_multiplier=noise_multiplier,
            l2_norm_clip=l2_norm_clip,
        )

    def summary(self) -> Dict[str, object]:
        return {
            "clients": [c.model_dump() for c in self._clients],
            "num_clients": len(self._clients),
            "total_data_size": self.total_data_size,
            "high_load": self.is_high_load,
            "issues": self.issues(),
            "valid": not self.issues(),
        }
