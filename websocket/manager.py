"""
WebSocket connection manager for the FL dashboard.

Pushes orchestrator events (state refreshes, completed rounds, completion,
failure, session renewals) to connected dashboards so they do not have to
poll the control routes themselves.

Clients are subscribed to the ``training`` channel on connect and may
send ``ping``, ``subscribe`` and ``unsubscribe`` messages.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from api.shared.logger import get_logger

logger = get_logger(__name__)

TRAINING_CHANNEL = "training"


class MessageType(str, Enum):
    """Types of WebSocket messages."""

    # Training events (mirror api.orchestrator.OrchestratorEvent)
    STATE_UPDATED = "state_updated"
    ROUND_COMPLETED = "round_completed"
    TRAINING_COMPLETE = "training_complete"
    TRAINING_FAILED = "training_failed"
    TRAINING_ERROR = "training_error"
    SESSION_RENEWED = "session_renewed"

    # System messages
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    CONNECTED = "connected"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


@dataclass
class WebSocketMessage:
    """Represents a WebSocket message."""

    type: MessageType
    channel: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now().isoformat()

    def to_json(self) -> str:
        """Convert message to JSON string."""
        return json.dumps({
            "type": self.type.value,
            "channel": self.channel,
            "data": self.data,
            "timestamp": self.timestamp,
        })

    @classmethod
    def from_json(cls, json_str: str) -> "WebSocketMessage":
        """Create message from JSON string."""
        data = json.loads(json_str)
        return cls(
            type=MessageType(data.get("type", "error")),
            channel=data.get("channel", ""),
            data=data.get("data", {}),
            timestamp=data.get("timestamp"),
        )


class WebSocketManager:
    """
    Tracks dashboard WebSocket connections and their channel subscriptions.
    """

    def __init__(self):
        self._connections: Set[WebSocket] = set()
        # channel -> subscribed sockets
        self._channels: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, channel: str = TRAINING_CHANNEL) -> None:
        """Accept a connection and subscribe it to ``channel``."""
        await websocket.accept()

        async with self._lock:
            self._connections.add(websocket)
            self._channels.setdefault(channel, set()).add(websocket)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(
                type=MessageType.CONNECTED,
                channel="system",
                data={"channel": channel, "message": "Connected to FL dashboard"},
            ),
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        """Forget a connection and all its subscriptions."""
        async with self._lock:
            for channel in list(self._channels):
                self._channels[channel].discard(websocket)
                if not self._channels[channel]:
                    del self._channels[channel]
            self._connections.discard(websocket)

    async def subscribe(self, websocket: WebSocket, channel: str) -> WebSocketMessage:
        async with self._lock:
            self._channels.setdefault(channel, set()).add(websocket)
        return WebSocketMessage(type=MessageType.SUBSCRIBED, channel=channel, data={"channel": channel})

    async def unsubscribe(self, websocket: WebSocket, channel: str) -> WebSocketMessage:
        async with self._lock:
            subscribers = self._channels.get(channel)
            if subscribers is not None:
                subscribers.discard(websocket)
                if not subscribers:
                    del self._channels[channel]
        return WebSocketMessage(type=MessageType.UNSUBSCRIBED, channel=channel, data={"channel": channel})

    async def send_to_connection(self, websocket: WebSocket, message: WebSocketMessage) -> bool:
        """Send to one connection; drops the connection if sending fails."""
        try:
            await websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.warning("Error sending WebSocket message: %s", e)
            await self.disconnect(websocket)
            return False

    async def broadcast_to_channel(self, channel: str, message: WebSocketMessage) -> int:
        """Send ``message`` to every subscriber of ``channel``.

        Returns:
            Number of connections that received the message
        """
        async with self._lock:
            subscribers = list(self._channels.get(channel, set()))

        sent_count = 0
        disconnected = []
        for websocket in subscribers:
            try:
                await websocket.send_text(message.to_json())
                sent_count += 1
            except Exception:
                disconnected.append(websocket)

        for ws in disconnected:
            await self.disconnect(ws)

        return sent_count

    def get_channel_subscribers(self, channel: str) -> int:
        return len(self._channels.get(channel, set()))

    def get_connection_count(self) -> int:
        return len(self._connections)

    async def handle_message(
        self,
        websocket: WebSocket,
        message_text: str,
    ) -> Optional[WebSocketMessage]:
        """Handle a client message, returning the reply to send (if any)."""
        try:
            message = WebSocketMessage.from_json(message_text)
        except (json.JSONDecodeError, ValueError) as e:
            return WebSocketMessage(
                type=MessageType.ERROR,
                channel="system",
                data={"error": f"Invalid message format: {e}"},
            )

        if message.type == MessageType.PING:
            return WebSocketMessage(
                type=MessageType.PONG,
                channel="system",
                data={"timestamp": datetime.now().isoformat()},
            )

        channel = message.data.get("channel") or message.channel
        if message.type == MessageType.SUBSCRIBE and channel:
            return await self.subscribe(websocket, channel)
        if message.type == MessageType.UNSUBSCRIBE and channel:
            return await self.unsubscribe(websocket, channel)

        return None


# Global WebSocket manager instance
ws_manager = WebSocketManager()


async def notify_training_event(event: str, snapshot: Dict[str, Any]) -> int:
    """
    Broadcast an orchestrator event with its snapshot on the training channel.

    Args:
        event: Orchestrator event name (e.g. "round_completed")
        snapshot: Orchestrator snapshot at the time of the event

    Returns:
        Number of dashboards notified
    """
    try:
        message_type = MessageType(event)
    except ValueError:
        message_type = MessageType.STATE_UPDATED

    message = WebSocketMessage(
        type=message_type,
        channel=TRAINING_CHANNEL,
        data=snapshot,
    )
    return await ws_manager.broadcast_to_channel(TRAINING_CHANNEL, message)
