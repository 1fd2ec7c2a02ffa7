"""
Root conftest.py for FL dashboard tests.

Shared fixtures, including ``FakeFLService``: an in-memory stand-in for the
external training service, served through ``httpx.MockTransport``.
"""

import asyncio
import json
import sys
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Tuple, Union

import httpx
import pytest

# Ensure the project root is in the path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from api.fl_client import FLServiceClient
from api.orchestrator import TrainingOrchestrator
from api.settings import DashboardSettings

BASE_URL = "http://fl.test"

Reply = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "websocket: mark test as involving WebSocket communication",
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running",
    )


def pytest_collection_modifyitems(config, items):
    """Mark WebSocket tests based on their name."""
    for item in items:
        if "websocket" in item.name.lower():
            item.add_marker(pytest.mark.websocket)


# ============================================================================
# Fake external service
# ============================================================================


class FakeFLService:
    """In-memory external FL service.

    Default behaviour: sessions are issued as ``session-<n>``, every
    training round advances ``current_round`` by one, and training becomes
    inactive at ``total_rounds``. Individual requests can be overridden
    with ``queue`` (one-shot) or ``always`` (persistent).
    """

    def __init__(self, total_rounds: int = 10):
        self.total_rounds = total_rounds
        self.current_round = 0
        self.training_active = False
        self.advance_on_train = True
        self.train_delay = 0.0
        self.session_counter = 0
        self.valid_sessions = set()
        self.initialize_payloads: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, str]] = []
        self.requests: List[httpx.Request] = []
        self._queued: Dict[Tuple[str, str], Deque[Reply]] = defaultdict(deque)
        self._always: Dict[Tuple[str, str], Reply] = {}

    # ----- configuration -----

    def queue(self, method: str, path: str, *replies: Reply) -> None:
        self._queued[(method, path)].extend(replies)

    def always(self, method: str, path: str, reply: Reply) -> None:
        self._always[(method, path)] = reply

    def clear(self, method: str, path: str) -> None:
        self._queued.pop((method, path), None)
        self._always.pop((method, path), None)

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)

    # ----- request handling -----

    async def handler(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        self.calls.append(key)
        self.requests.append(request)

        reply = None
        if self._queued.get(key):
            reply = self._queued[key].popleft()
        elif key in self._always:
            reply = self._always[key]

        if reply is not None:
            if isinstance(reply, Exception):
                raise reply
            if isinstance(reply, httpx.Response):
                # Fresh copy: "always" replies are served more than once
                return httpx.Response(
                    reply.status_code, headers=reply.headers, content=reply.content
                )
            return reply(request)

        return await self._default(request)

    async def _default(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path

        if method == "POST" and path == "/api/session/new":
            self.session_counter += 1
            session_id = f"session-{self.session_counter}"
            self.valid_sessions.add(session_id)
            return httpx.Response(200, json={"session_id": session_id})

        if method == "GET" and path.startswith("/api/session/") and path.endswith("/status"):
            session_id = path.split("/")[3]
            return httpx.Response(200, json={"valid": session_id in self.valid_sessions})

        if method == "POST" and path == "/api/fl/initialize":
            self.initialize_payloads.append(json.loads(request.content or b"{}"))
            self.current_round = 0
            self.training_active = True
            return httpx.Response(200, json={"status": "success", "message": "Training initialized"})

        if method == "POST" and path == "/api/fl/train_round":
            if self.train_delay:
                await asyncio.sleep(self.train_delay)
            if self.advance_on_train and self.current_round < self.total_rounds:
                self.current_round += 1
            if self.current_round >= self.total_rounds:
                self.training_active = False
            return httpx.Response(
                200,
                json={"status": "success", "metrics": {"round": self.current_round}},
            )

        if method == "GET" and path == "/api/fl/current_state":
            return httpx.Response(200, json=self.state_payload())

        if method == "GET" and path == "/api/fl/metrics":
            return httpx.Response(200, json=self.metrics_payload())

        if method == "POST" and path == "/api/fl/reset":
            self.current_round = 0
            self.training_active = False
            return httpx.Response(200, json={"status": "success"})

        return httpx.Response(404, json={"error": f"Unknown route {method} {path}"})

    def state_payload(self) -> Dict[str, Any]:
        return {
            "status": "Training" if self.training_active else "Idle",
            "current_round": self.current_round,
            "total_rounds": self.total_rounds,
            "privacy_settings": {"noise_multiplier": 1.0, "l2_norm_clip": 1.0},
            "training_active": self.training_active,
            "latest_accuracy": 0.5 + 0.04 * self.current_round if self.current_round else None,
        }

    def metrics_payload(self) -> Dict[str, Any]:
        rounds = list(range(1, self.current_round + 1))
        return {
            "status": "success",
            "training_history": {
                "rounds": rounds,
                "training_metrics": [round_metrics(r) for r in rounds],
            },
        }


def round_metrics(round_number: int) -> Dict[str, Any]:
    return {
        "round_number": round_number,
        "client_metrics": {"client_1": {"loss": 1.0 / round_number, "accuracy": 0.5}},
        "global_metrics": {"test_loss": 1.0 / round_number, "test_accuracy": 0.5 + 0.04 * round_number},
        "privacy_metrics": {"noise_scale": 1.0, "clip_norm": 1.0, "clipped_updates": 0},
        "privacy_budget": {
            "epsilon": 0.3 * round_number,
            "delta": 1e-5,
            "noise_multiplier": 1.0,
            "l2_norm_clip": 1.0,
        },
    }


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def fake_service():
    return FakeFLService()


@pytest.fixture
def settings():
    """Settings with no reconciliation delay and fast schedules."""
    return DashboardSettings(
        fl_api_url=BASE_URL,
        round_interval=0.05,
        poll_interval=0.05,
        reconcile_delay=0.0,
    )


@pytest.fixture
def make_orchestrator(fake_service, settings):
    """Factory building an orchestrator wired to the fake service.

    Call it from inside the test's event loop.
    """

    def factory(**overrides) -> TrainingOrchestrator:
        effective = settings
        if overrides:
            effective = DashboardSettings(**{**settings.to_dict(), **overrides})
        client = FLServiceClient(fake_service.http_client(), effective.fl_api_url)
        return TrainingOrchestrator(client, effective)

    return factory
