"""
Centralized logging for the FL dashboard backend.

Every module logs through the standard ``logging`` package with one shared
format, configured once at startup.

Usage:
    from api.shared.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Proxy forwarding to %s", base_url)
    logger.warning("Session %s reported invalid, requesting a new one", session_id)
    logger.error("Training round failed: %s", err)
"""

import logging
import sys

_configured = False


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the dashboard backend.

    Call once at startup (main.py). Subsequent calls are no-ops.
    """
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    # httpx logs every request at INFO; the poll loops make that noisy
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger scoped to the dashboard namespace.

    Args:
        name: Module name (typically ``__name__``).
    """
    return logging.getLogger(name)
