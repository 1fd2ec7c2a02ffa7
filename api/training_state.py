"""
Data model shared by the orchestrator, the control routes and the WebSocket
stream.

- TrainingConfiguration: what is submitted to ``/api/fl/initialize``
- RoundState: the service's view of training progress
- MetricsHistory: per-round metrics, in arrival order
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class TrainingConfiguration(BaseModel):
    """Client and privacy configuration for one training run.

    Frozen: once submitted to the service it cannot change.
    """

    model_config = ConfigDict(frozen=True)

    num_clients: int = Field(..., ge=1, description="Number of participating clients")
    local_epochs: int = Field(1, ge=1, description="Local epochs per round")
    batch_size: int = Field(32, ge=1, description="Local batch size")
    noise_multiplier: float = Field(1.0, gt=0, description="DP noise multiplier")
    l2_norm_clip: float = Field(1.0, gt=0, description="DP per-update L2 clip norm")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump()


class RoundStatus(str, Enum):
    """Coarse training status shown to the user."""

    INITIALIZING = "Initializing"
    TRAINING = "Training"
    COMPLETE = "Complete"
    FAILED = "Failed"


@dataclass
class RoundState:
    """Training progress as last reported by the service."""

    current_round: int = 0
    total_rounds: int = 10
    training_active: bool = False
    latest_accuracy: Optional[float] = None
    status: RoundStatus = RoundStatus.INITIALIZING
    server_status: Optional[str] = None
    privacy_settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Dict[str, Any], default_total_rounds: int = 10) -> "RoundState":
        """Build from a ``/api/fl/current_state`` response."""
        total = _as_int(data.get("total_rounds"), default_total_rounds) or default_total_rounds
        current = min(max(_as_int(data.get("current_round"), 0), 0), total)
        active = bool(data.get("training_active", False))
        accuracy = data.get("latest_accuracy")

        state = cls(
            current_round=current,
            total_rounds=total,
            training_active=active,
            latest_accuracy=float(accuracy) if isinstance(accuracy, (int, float)) else None,
            server_status=data.get("status"),
            privacy_settings=dict(data.get("privacy_settings") or {}),
        )
        state.status = RoundStatus.COMPLETE if state.is_terminal else RoundStatus.TRAINING
        return state

    @property
    def is_terminal(self) -> bool:
        return self.current_round >= self.total_rounds or not self.training_active

    @property
    def progress_percent(self) -> float:
        if self.total_rounds <= 0:
            return 0.0
        return round(self.current_round / self.total_rounds * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_round": self.current_round,
            "total_rounds": self.total_rounds,
            "training_active": self.training_active,
            "latest_accuracy": self.latest_accuracy,
            "status": self.status.value,
            "server_status": self.server_status,
            "privacy_settings": self.privacy_settings,
            "progress_percent": self.progress_percent,
        }


@dataclass(frozen=True)
class RoundMetrics:
    """Metrics reported for one round."""

    round_number: int
    client_metrics: Dict[str, Any] = field(default_factory=dict)
    global_metrics: Dict[str, Any] = field(default_factory=dict)
    privacy_metrics: Dict[str, Any] = field(default_factory=dict)
    privacy_budget: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RoundMetrics":
        return cls(
            round_number=_as_int(data.get("round_number"), 0),
            client_metrics=dict(data.get("client_metrics") or {}),
            global_metrics=dict(data.get("global_metrics") or {}),
            privacy_metrics=dict(data.get("privacy_metrics") or {}),
            privacy_budget=dict(data.get("privacy_budget") or {}),
        )

    @property
    def test_accuracy(self) -> Optional[float]:
        value = self.global_metrics.get("test_accuracy")
        return float(value) if isinstance(value, (int, float)) else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round_number": self.round_number,
            "client_metrics": self.client_metrics,
            "global_metrics": self.global_metrics,
            "privacy_metrics": self.privacy_metrics,
            "privacy_budget": self.privacy_budget,
        }


class MetricsHistory:
    """Immutable, ordered snapshot of per-round metrics.

    Ordering is arrival order from the service. A new poll produces a new
    history; entries are never edited in place.
    """

    def __init__(self, entries: Tuple[RoundMetrics, ...] = (), rounds: Tuple[int, ...] = ()):
        self._entries = tuple(entries)
        self._rounds = tuple(rounds) if rounds else tuple(e.round_number for e in self._entries)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "MetricsHistory":
        """Build from a ``/api/fl/metrics`` response."""
        history = data.get("training_history") or {}
        raw_metrics = history.get("training_metrics") or []
        entries = tuple(RoundMetrics.from_payload(m) for m in raw_metrics if isinstance(m, dict))
        rounds = tuple(_as_int(r, 0) for r in history.get("rounds") or ())
        return cls(entries, rounds)

    @property
    def entries(self) -> Tuple[RoundMetrics, ...]:
        return self._entries

    @property
    def rounds(self) -> Tuple[int, ...]:
        return self._rounds

    @property
    def latest(self) -> Optional[RoundMetrics]:
        return self._entries[-1] if self._entries else None

    def accuracy_series(self) -> List[Dict[str, float]]:
        """Chart points: round number vs test accuracy in percent."""
        return [
            {"round": e.round_number, "accuracy": e.test_accuracy * 100}
            for e in self._entries
            if e.test_accuracy is not None
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[RoundMetrics]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MetricsHistory):
            return NotImplemented
        return self._entries == other._entries and self._rounds == other._rounds

    def to_dict(self) -> Dict[str, Any]:
        latest = self.latest
        return {
            "rounds": list(self._rounds),
            "training_metrics": [e.to_dict() for e in self._entries],
            "accuracy_series": self.accuracy_series(),
            "latest_privacy_budget": latest.privacy_budget if latest else None,
        }


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
