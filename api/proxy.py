"""
Proxy routes to the external FL service.

Each route mirrors one endpoint of the external service: it takes the
browser's ``X-Session-ID`` header, forwards the request to ``FL_API_URL``
and relays the status code and body unchanged. Transport failures become a
500 with an ``error`` field; timeouts become a 504.
"""

from typing import Optional

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from .fl_client import SESSION_HEADER
from .settings import DashboardSettings
from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

# Hop-by-hop and length headers are recomputed by the ASGI server
_DROPPED_RESPONSE_HEADERS = {"content-length", "content-encoding", "transfer-encoding", "connection"}


def _settings(request: Request) -> DashboardSettings:
    return request.app.state.settings


def _http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def _missing_session() -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "No session ID provided"})


async def forward(
    request: Request,
    method: str,
    path: str,
    session_id: Optional[str] = None,
    timeout: Optional[float] = None,
    error_message: str = "Failed to reach training service",
) -> Response:
    """Forward ``request`` to the external service and relay the answer.

    Args:
        request: Incoming request (body is forwarded for non-GET methods)
        method: HTTP method to use upstream
        path: Upstream path, starting with ``/api``
        session_id: Session header value to attach
        timeout: Upstream timeout in seconds (defaults to the proxy timeout)
        error_message: Message used when the upstream cannot be reached
    """
    settings = _settings(request)
    timeout = settings.proxy_timeout if timeout is None else timeout
    url = f"{settings.fl_api_url}{path}"

    headers = {}
    if session_id:
        headers[SESSION_HEADER] = session_id

    content = None
    if method != "GET":
        content = await request.body()
        if content:
            headers["Content-Type"] = request.headers.get("content-type", "application/json")

    try:
        upstream = await _http_client(request).request(
            method, url, headers=headers, content=content, timeout=timeout
        )
    except httpx.TimeoutException:
        logger.error("%s %s timed out after %ss", method, path, timeout)
        return JSONResponse(status_code=504, content={"error": "Request timed out"})
    except httpx.HTTPError as e:
        logger.error("%s %s failed: %s", method, path, e)
        return JSONResponse(status_code=500, content={"error": str(e) or error_message})

    if upstream.status_code >= 400:
        logger.warning("%s %s -> %d: %s", method, path, upstream.status_code, upstream.text[:500])

    relayed_headers = {
        k: v for k, v in upstream.headers.items() if k.lower() not in _DROPPED_RESPONSE_HEADERS
    }
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=relayed_headers,
        media_type=upstream.headers.get("content-type"),
    )


# ============= Session Routes =============


@router.post("/session/new")
async def new_session(request: Request):
    """Create a session on the external service."""
    return await forward(
        request, "POST", "/api/session/new", error_message="Failed to initialize session"
    )


@router.get("/session/{session_id}/status")
async def session_status(session_id: str, request: Request):
    """Check whether a session is still valid."""
    return await forward(
        request,
        "GET",
        f"/api/session/{session_id}/status",
        session_id=session_id,
        error_message="Failed to validate session",
    )


# ============= Training Routes =============


@router.post("/fl/initialize")
async def initialize(request: Request):
    """Submit the training configuration (body forwarded as is)."""
    session_id = request.headers.get(SESSION_HEADER)
    if not session_id:
        return _missing_session()
    logger.info("Initializing with session: %s", session_id)
    return await forward(
        request,
        "POST",
        "/api/fl/initialize",
        session_id=session_id,
        timeout=_settings(request).long_request_timeout,
        error_message="Failed to initialize training",
    )


@router.post("/fl/train_round")
async def train_round(request: Request):
    """Run one training round."""
    session_id = request.headers.get(SESSION_HEADER)
    if not session_id:
        return _missing_session()
    return await forward(
        request,
        "POST",
        "/api/fl/train_round",
        session_id=session_id,
        timeout=_settings(request).long_request_timeout,
        error_message="Failed to train round",
    )


@router.get("/fl/current_state")
async def current_state(request: Request):
    """Fetch the current training state."""
    session_id = request.headers.get(SESSION_HEADER)
    if not session_id:
        return _missing_session()
    return await forward(
        request,
        "GET",
        "/api/fl/current_state",
        session_id=session_id,
        error_message="Failed to fetch current state",
    )


@router.get("/fl/metrics")
async def metrics(request: Request):
    """Fetch the training history."""
    session_id = request.headers.get(SESSION_HEADER)
    if not session_id:
        return _missing_session()
    return await forward(
        request,
        "GET",
        "/api/fl/metrics",
        session_id=session_id,
        error_message="Failed to fetch metrics",
    )


@router.post("/fl/reset")
async def reset(request: Request):
    """Reset training on the external service."""
    session_id = request.headers.get(SESSION_HEADER)
    if not session_id:
        return _missing_session()
    return await forward(
        request,
        "POST",
        "/api/fl/reset",
        session_id=session_id,
        error_message="Internal server error",
    )
