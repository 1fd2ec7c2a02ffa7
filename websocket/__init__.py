"""
WebSocket module for the FL dashboard.

Streams orchestrator events (round completions, state refreshes, completion
and failure) to connected dashboards.
"""

from .manager import (
    TRAINING_CHANNEL,
    MessageType,
    WebSocketManager,
    WebSocketMessage,
    notify_training_event,
    ws_manager,
)

__all__ = [
    "TRAINING_CHANNEL",
    "WebSocketManager",
    "WebSocketMessage",
    "MessageType",
    "ws_manager",
    "notify_training_event",
]
