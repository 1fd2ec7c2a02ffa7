"""
Shared utilities for the FL dashboard API.

Helpers used across the proxy, the orchestrator and the control routes.
"""
from .logger import get_logger, setup_logging
from .retry import RetryOutcome, retry_fixed

__all__ = [
    "get_logger",
    "setup_logging",
    "RetryOutcome",
    "retry_fixed",
]
