"""
Error taxonomy for the FL dashboard.

Everything the orchestrator can run into while talking to the external
training service is one of these. The orchestrator catches them at each
operation boundary and turns them into a single user-visible message.
"""

from typing import List, Optional

import httpx


class DashboardError(Exception):
    """Base class for dashboard errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def user_message(self) -> str:
        return self.message


class SessionError(DashboardError):
    """The session is missing, invalid or expired, or could not be created."""


class RequestTimeoutError(DashboardError):
    """The external service did not answer within the allowed time."""

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout


class ServiceError(DashboardError):
    """The external service answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def user_message(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (HTTP {self.status_code})"


class InitializationError(ServiceError):
    """Training initialization was rejected by the external service."""


class ConfigValidationError(DashboardError):
    """A client configuration violates a local constraint.

    Raised before anything is sent over the network.
    """

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        super().__init__(message)
        self.issues = issues or [message]


def extract_error_message(response: httpx.Response) -> str:
    """Pull a human readable error message out of a failed response.

    Tries the JSON ``error``, ``detail`` and ``message`` fields in that
    order, then falls back to the raw body text.
    """
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        for key in ("error", "detail", "message"):
            value = data.get(key)
            if value:
                return value if isinstance(value, str) else str(value)

    text = response.text.strip()
    if text:
        return text
    return f"HTTP error {response.status_code}"
