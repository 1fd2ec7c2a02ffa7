"""
Async client for the external federated-learning service.

Wraps one shared ``httpx.AsyncClient`` and maps transport problems and
non-success responses onto the dashboard error taxonomy:

- timeouts           -> RequestTimeoutError
- HTTP 401           -> SessionError
- other HTTP >= 400  -> ServiceError (message from the JSON ``error`` field)
- connection errors  -> ServiceError without a status code
"""

from typing import Any, Dict, Optional

import httpx

from .errors import (
    InitializationError,
    RequestTimeoutError,
    ServiceError,
    SessionError,
    extract_error_message,
)
from .shared.logger import get_logger

logger = get_logger(__name__)

SESSION_HEADER = "X-Session-ID"


class FLServiceClient:
    """Thin typed wrapper around the external FL service endpoints."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        timeout: float = 30.0,
    ):
        """
        Args:
            http_client: Shared async HTTP client (injected, not owned)
            base_url: Base URL of the external service
            timeout: Default per-request timeout in seconds
        """
        self._http = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        session_id: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a request and return the decoded JSON body."""
        headers = {}
        if session_id:
            headers[SESSION_HEADER] = session_id
        timeout = self.timeout if timeout is None else timeout
        url = f"{self.base_url}{path}"

        try:
            response = await self._http.request(
                method, url, headers=headers, json=json, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(
                f"Request to {path} timed out after {timeout:g}s", timeout=timeout
            ) from e
        except httpx.HTTPError as e:
            raise ServiceError(f"Could not reach training service: {e}") from e

        if response.status_code == 401:
            raise SessionError(extract_error_message(response))

        if response.status_code >= 400:
            message = extract_error_message(response)
            logger.warning("%s %s failed with %d: %s", method, path, response.status_code, message)
            raise ServiceError(message, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise ServiceError(
                f"Invalid JSON from {path}", status_code=response.status_code
            ) from e

        if not isinstance(data, dict):
            raise ServiceError(
                f"Unexpected response from {path}", status_code=response.status_code
            )
        return data

    # ============= Session =============

    async def new_session(self) -> str:
        """Request a new session id."""
        data = await self._request("POST", "/api/session/new")
        session_id = data.get("session_id")
        if not session_id:
            raise SessionError("No session ID received")
        return str(session_id)

    async def session_status(self, session_id: str) -> bool:
        """Return whether the service still considers ``session_id`` valid."""
        data = await self._request(
            "GET", f"/api/session/{session_id}/status", session_id=session_id
        )
        return bool(data.get("valid", False))

    # ============= Training =============

    async def initialize(
        self,
        session_id: str,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Submit the training configuration for this session."""
        try:
            data = await self._request(
                "POST", "/api/fl/initialize", session_id=session_id, json=payload, timeout=timeout
            )
        except ServiceError as e:
            raise InitializationError(e.message, status_code=e.status_code) from e

        if str(data.get("status", "success")).lower() == "error":
            raise InitializationError(
                data.get("error") or data.get("message") or "Failed to initialize training"
            )
        return data

    async def train_round(self, session_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Trigger one training round."""
        return await self._request(
            "POST", "/api/fl/train_round", session_id=session_id, timeout=timeout
        )

    async def current_state(self, session_id: str) -> Dict[str, Any]:
        """Fetch the current round state."""
        return await self._request("GET", "/api/fl/current_state", session_id=session_id)

    async def metrics(self, session_id: str) -> Dict[str, Any]:
        """Fetch the full training history."""
        return await self._request("GET", "/api/fl/metrics", session_id=session_id)

    async def reset(self, session_id: str) -> Dict[str, Any]:
        """Reset training on the service side."""
        return await self._request("POST", "/api/fl/reset", session_id=session_id)
