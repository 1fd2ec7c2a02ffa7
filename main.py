"""
FastAPI backend for the federated-learning dashboard.

This module wires together:
- the proxy routes that forward browser requests to the external FL
  service with the session header attached
- the training orchestrator (session lifecycle, round loop, poll loop)
  and its control routes
- a WebSocket stream of orchestrator events for the dashboard UI
"""

import os
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse

from api.errors import ConfigValidationError
from api.fl_client import FLServiceClient
from api.orchestrator import OrchestratorEvent, TrainingOrchestrator
from api.proxy import router as proxy_router
from api.settings import DashboardSettings
from api.shared.logger import get_logger, setup_logging
from api.system import log_error
from api.system import router as system_router
from api.training import router as training_router
from websocket import TRAINING_CHANNEL, notify_training_event, ws_manager

logger = get_logger(__name__)


async def _broadcast_event(event: OrchestratorEvent, snapshot: dict) -> None:
    await notify_training_event(event.value, snapshot)


def create_app(
    settings: Optional[DashboardSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the dashboard application.

    Args:
        settings: Settings to use (defaults to ``DashboardSettings.from_env()``)
        transport: Optional httpx transport for the upstream client, used by
            tests to stand in for the external service

    Returns:
        FastAPI application instance
    """
    settings = settings or DashboardSettings.from_env()
    setup_logging(settings.log_level)

    app = FastAPI(
        title="FL Dashboard API",
        description="Dashboard backend for an external federated-learning training service",
        version="1.0.0",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings

    # ============= Exception Handlers for Error Logging =============

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Log HTTP exceptions and return JSON response."""
        # Only log 5xx errors (server errors)
        if exc.status_code >= 500:
            log_error(
                endpoint=str(request.url.path),
                message=str(exc.detail),
                level="error",
                details=f"Status code: {exc.status_code}",
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(ConfigValidationError)
    async def validation_exception_handler(request: Request, exc: ConfigValidationError):
        """Reject invalid client setups before anything reaches the service."""
        return JSONResponse(
            status_code=400,
            content={"detail": exc.message, "issues": exc.issues},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Log unexpected exceptions and return JSON response."""
        log_error(
            endpoint=str(request.url.path),
            message=str(exc),
            level="critical",
            details=f"Unhandled exception: {type(exc).__name__}",
            exc=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Dev mode serves the UI from another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,  # Must be False when using allow_origins=["*"]
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(proxy_router, prefix="/api", tags=["proxy"])
    app.include_router(training_router, prefix="/api", tags=["training"])
    app.include_router(system_router, prefix="/api", tags=["system"])

    # ============= Startup / Shutdown =============

    @app.on_event("startup")
    async def startup_event():
        """Create the upstream HTTP client and the orchestrator."""
        logger.info("FL dashboard starting, upstream service: %s", settings.fl_api_url)
        http_client = httpx.AsyncClient(transport=transport, timeout=settings.proxy_timeout)
        app.state.http_client = http_client

        fl_client = FLServiceClient(http_client, settings.fl_api_url, timeout=settings.proxy_timeout)
        orchestrator = TrainingOrchestrator(fl_client, settings)
        orchestrator.add_listener(_broadcast_event)
        app.state.orchestrator = orchestrator
        logger.info("Startup complete")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the orchestrator timers and close the upstream client."""
        orchestrator = getattr(app.state, "orchestrator", None)
        if orchestrator is not None:
            orchestrator.close()
        http_client = getattr(app.state, "http_client", None)
        if http_client is not None:
            await http_client.aclose()
        logger.info("FL dashboard stopped")

    # ============= WebSocket Endpoints =============

    @app.websocket("/ws/training")
    async def training_websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for training updates.

        Subscribes to the training channel on connect. Every orchestrator
        event is pushed as {"type": <event>, "channel": "training",
        "data": <snapshot>}.
        """
        await ws_manager.connect(websocket, TRAINING_CHANNEL)

        try:
            while True:
                message_text = await websocket.receive_text()
                response = await ws_manager.handle_message(websocket, message_text)
                if response:
                    await ws_manager.send_to_connection(websocket, response)

        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)
        except Exception as e:
            logger.error("Training WebSocket error: %s", e)
            await ws_manager.disconnect(websocket)

    @app.get("/api/ws/stats")
    async def get_websocket_stats():
        """Get WebSocket connection statistics."""
        return {
            "total_connections": ws_manager.get_connection_count(),
            "training_subscribers": ws_manager.get_channel_subscribers(TRAINING_CHANNEL),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="FL dashboard backend server")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("FL_DASHBOARD_PORT", 8000)),
        help="Port to run the server on (default: 8000 or FL_DASHBOARD_PORT env var)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Enable auto-reload",
    )
    args = parser.parse_args()

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )
