"""
System API routes for the FL dashboard.

Health, environment information and a small in-memory log of recent
server-side errors.
"""

import platform
import sys
import traceback
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Optional

from fastapi import APIRouter, Request

from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

_MAX_ERRORS = 100
_recent_errors: Deque[Dict[str, Any]] = deque(maxlen=_MAX_ERRORS)


def log_error(
    endpoint: str,
    message: str,
    level: str = "error",
    details: Optional[str] = None,
    exc: Optional[BaseException] = None,
) -> Dict[str, Any]:
    """Record a server-side error and write it to the log.

    Args:
        endpoint: Request path that failed
        message: Short error message
        level: "warning", "error" or "critical"
        details: Extra context (status code, exception type)
        exc: Exception to attach a traceback from

    Returns:
        The stored error entry
    """
    entry = {
        "timestamp": datetime.now().isoformat(),
        "endpoint": endpoint,
        "message": message,
        "level": level,
        "details": details,
        "traceback": (
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            if exc is not None
            else None
        ),
    }
    _recent_errors.append(entry)

    log_fn = logger.critical if level == "critical" else (
        logger.warning if level == "warning" else logger.error
    )
    log_fn("%s: %s (%s)", endpoint, message, details or "-")
    return entry


def _get_package_versions() -> Dict[str, str]:
    """Get versions of key packages."""
    packages = {}

    package_names = [
        "fastapi",
        "uvicorn",
        "httpx",
        "pydantic",
        "orjson",
    ]

    for name in package_names:
        try:
            module = __import__(name)
            version = getattr(module, "__version__", "unknown")
            packages[name] = version
        except ImportError:
            pass

    return packages


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "message": "FL dashboard is running",
    }


@router.get("/system/info")
async def system_info(request: Request):
    """Get system, environment and upstream service information."""
    settings = request.app.state.settings
    return {
        "python": {
            "version": sys.version,
            "platform": sys.platform,
            "executable": sys.executable,
        },
        "system": {
            "os": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
        },
        "fl_api_url": settings.fl_api_url,
        "settings": settings.to_dict(),
        "packages": _get_package_versions(),
    }


@router.get("/system/errors")
async def recent_errors(limit: int = 50):
    """Most recent server-side errors, newest first."""
    errors = list(_recent_errors)[-limit:]
    errors.reverse()
    return {"errors": errors, "total": len(_recent_errors)}
