"""
Tests for training WebSocket events.

Tests:
- Orchestrator events have matching MessageType values
- notify_training_event builds the right message and broadcasts it
- The /ws/training endpoint handshake and ping/subscribe handling

Run tests:
    pytest tests/test_websocket_events.py -v
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from api.orchestrator import OrchestratorEvent
from main import create_app
from websocket.manager import (
    TRAINING_CHANNEL,
    MessageType,
    WebSocketManager,
    WebSocketMessage,
    notify_training_event,
)

# ============================================================================
# MessageType Enum Tests
# ============================================================================


class TestTrainingMessageTypes:
    """Every orchestrator event can be sent over the socket."""

    @pytest.mark.parametrize("event", list(OrchestratorEvent))
    def test_event_has_message_type(self, event):
        assert MessageType(event.value).value == event.value

    def test_message_round_trip(self):
        msg = WebSocketMessage(
            type=MessageType.ROUND_COMPLETED,
            channel=TRAINING_CHANNEL,
            data={"phase": "polling", "round_state": {"current_round": 2}},
        )

        parsed = WebSocketMessage.from_json(msg.to_json())

        assert parsed.type == MessageType.ROUND_COMPLETED
        assert parsed.channel == "training"
        assert parsed.data["round_state"]["current_round"] == 2
        assert parsed.timestamp == msg.timestamp


# ============================================================================
# Notification Helper Tests
# ============================================================================


class TestNotifyTrainingEvent:

    def test_broadcasts_on_training_channel(self):
        with patch("websocket.manager.ws_manager") as mock_manager:
            mock_manager.broadcast_to_channel = AsyncMock(return_value=2)

            sent = asyncio.run(notify_training_event("training_complete", {"phase": "complete"}))

            assert sent == 2
            channel, message = mock_manager.broadcast_to_channel.call_args[0]
            assert channel == TRAINING_CHANNEL
            assert message.type == MessageType.TRAINING_COMPLETE
            assert message.data == {"phase": "complete"}

    def test_unknown_event_sent_as_state_update(self):
        with patch("websocket.manager.ws_manager") as mock_manager:
            mock_manager.broadcast_to_channel = AsyncMock(return_value=0)

            asyncio.run(notify_training_event("something_else", {}))

            message = mock_manager.broadcast_to_channel.call_args[0][1]
            assert message.type == MessageType.STATE_UPDATED


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


class TestWebSocketManager:

    def test_connect_subscribes_and_greets(self):
        manager = WebSocketManager()
        socket = FakeSocket()

        asyncio.run(manager.connect(socket))

        assert socket.accepted
        assert socket.sent[0]["type"] == "connected"
        assert manager.get_channel_subscribers(TRAINING_CHANNEL) == 1

    def test_broadcast_drops_dead_connections(self):
        manager = WebSocketManager()
        alive, dead = FakeSocket(), FakeSocket()

        async def scenario():
            await manager.connect(alive)
            await manager.connect(dead)
            dead.fail = True
            message = WebSocketMessage(type=MessageType.STATE_UPDATED, channel=TRAINING_CHANNEL)
            return await manager.broadcast_to_channel(TRAINING_CHANNEL, message)

        assert asyncio.run(scenario()) == 1
        assert manager.get_connection_count() == 1
        assert alive.sent[-1]["type"] == "state_updated"

    def test_invalid_message(self):
        manager = WebSocketManager()

        reply = asyncio.run(manager.handle_message(FakeSocket(), "not json"))

        assert reply.type == MessageType.ERROR


# ============================================================================
# Endpoint Tests
# ============================================================================


@pytest.fixture
def client(fake_service, settings):
    app = create_app(settings, transport=fake_service.transport)
    with TestClient(app) as test_client:
        yield test_client


class TestTrainingWebSocketEndpoint:

    def test_websocket_connect_and_ping(self, client):
        with client.websocket_connect("/ws/training") as ws:
            greeting = ws.receive_json()
            assert greeting["type"] == "connected"
            assert greeting["data"]["channel"] == "training"

            ws.send_text(json.dumps({"type": "ping", "channel": "system"}))
            assert ws.receive_json()["type"] == "pong"

    def test_websocket_unsubscribe(self, client):
        with client.websocket_connect("/ws/training") as ws:
            ws.receive_json()

            ws.send_text(
                json.dumps({"type": "unsubscribe", "channel": "training", "data": {"channel": "training"}})
            )
            reply = ws.receive_json()
            assert reply["type"] == "unsubscribed"
            assert reply["data"]["channel"] == "training"

    def test_websocket_receives_session_event(self, client):
        with client.websocket_connect("/ws/training") as ws:
            ws.receive_json()

            client.post("/api/dashboard/session/renew")

            event = ws.receive_json()
            assert event["type"] == "session_renewed"
            assert event["channel"] == "training"
            assert event["data"]["session"]["id"] == "session-1"

    def test_websocket_stats(self, client):
        with client.websocket_connect("/ws/training") as ws:
            ws.receive_json()
            stats = client.get("/api/ws/stats").json()
            assert stats["total_connections"] >= 1
            assert stats["training_subscribers"] >= 1
