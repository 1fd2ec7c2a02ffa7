"""
API package for the FL dashboard FastAPI backend.

This package provides:
- Proxy routes to the external FL service (proxy.py)
- Training control routes (training.py)
- System health and info (system.py)
- The session-bound training orchestrator (orchestrator.py, session.py)
- Client setup rules and the shared data model (client_setup.py, training_state.py)
"""

from .client_setup import ClientSetup, ClientSpec
from .errors import (
    ConfigValidationError,
    DashboardError,
    InitializationError,
    RequestTimeoutError,
    ServiceError,
    SessionError,
)
from .fl_client import FLServiceClient
from .orchestrator import OrchestratorEvent, RoundResult, TrainingOrchestrator, TrainingPhase
from .session import Session, SessionManager
from .settings import DashboardSettings
from .training_state import MetricsHistory, RoundMetrics, RoundState, RoundStatus, TrainingConfiguration

__all__ = [
    "ClientSetup",
    "ClientSpec",
    "ConfigValidationError",
    "DashboardError",
    "DashboardSettings",
    "FLServiceClient",
    "InitializationError",
    "MetricsHistory",
    "OrchestratorEvent",
    "RequestTimeoutError",
    "RoundMetrics",
    "RoundResult",
    "RoundState",
    "RoundStatus",
    "ServiceError",
    "Session",
    "SessionError",
    "SessionManager",
    "TrainingConfiguration",
    "TrainingOrchestrator",
    "TrainingPhase",
]
