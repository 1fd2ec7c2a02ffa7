"""
Tests for the external service client: header propagation and the mapping
of transport failures and HTTP statuses onto dashboard errors.
"""

import httpx
import pytest

from api.errors import (
    InitializationError,
    RequestTimeoutError,
    ServiceError,
    SessionError,
    extract_error_message,
)
from api.fl_client import SESSION_HEADER, FLServiceClient

STATE = ("GET", "/api/fl/current_state")


@pytest.fixture
def client(fake_service, settings):
    return FLServiceClient(fake_service.http_client(), settings.fl_api_url + "/", timeout=5.0)


class TestRequests:

    @pytest.mark.asyncio
    async def test_session_header_attached(self, client, fake_service):
        await client.current_state("abc")

        request = fake_service.requests[-1]
        assert request.headers[SESSION_HEADER] == "abc"
        assert str(request.url) == "http://fl.test/api/fl/current_state"

    @pytest.mark.asyncio
    async def test_new_session_sends_no_header(self, client, fake_service):
        assert await client.new_session() == "session-1"
        assert SESSION_HEADER not in fake_service.requests[-1].headers

    @pytest.mark.asyncio
    async def test_initialize_sends_payload(self, client, fake_service):
        payload = {"num_clients": 2, "local_epochs": 1, "batch_size": 32,
                   "noise_multiplier": 1.0, "l2_norm_clip": 1.0}

        data = await client.initialize("abc", payload)

        assert data["status"] == "success"
        assert fake_service.initialize_payloads == [payload]

    @pytest.mark.asyncio
    async def test_session_status(self, client, fake_service):
        session_id = await client.new_session()
        assert await client.session_status(session_id) is True
        assert await client.session_status("unknown") is False


class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_401_is_session_error(self, client, fake_service):
        fake_service.queue(*STATE, httpx.Response(401, json={"error": "Invalid session"}))

        with pytest.raises(SessionError, match="Invalid session"):
            await client.current_state("abc")

    @pytest.mark.asyncio
    async def test_error_status_carries_message_and_code(self, client, fake_service):
        fake_service.queue(*STATE, httpx.Response(500, json={"error": "model diverged"}))

        with pytest.raises(ServiceError) as exc_info:
            await client.current_state("abc")

        assert exc_info.value.message == "model diverged"
        assert exc_info.value.status_code == 500
        assert exc_info.value.user_message == "model diverged (HTTP 500)"

    @pytest.mark.asyncio
    async def test_plain_text_error_body(self, client, fake_service):
        fake_service.queue(*STATE, httpx.Response(502, text="Bad Gateway"))

        with pytest.raises(ServiceError, match="Bad Gateway"):
            await client.current_state("abc")

    @pytest.mark.asyncio
    async def test_timeout(self, client, fake_service):
        fake_service.queue("POST", "/api/fl/train_round", httpx.ReadTimeout("read timed out"))

        with pytest.raises(RequestTimeoutError) as exc_info:
            await client.train_round("abc", timeout=60.0)

        assert exc_info.value.timeout == 60.0
        assert "timed out after 60s" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error(self, client, fake_service):
        fake_service.queue(*STATE, httpx.ConnectError("connection refused"))

        with pytest.raises(ServiceError) as exc_info:
            await client.current_state("abc")

        assert exc_info.value.status_code is None
        assert "Could not reach training service" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, fake_service):
        fake_service.queue(*STATE, httpx.Response(200, text="<html>"))

        with pytest.raises(ServiceError, match="Invalid JSON"):
            await client.current_state("abc")

    @pytest.mark.asyncio
    async def test_non_object_json(self, client, fake_service):
        fake_service.queue(*STATE, httpx.Response(200, json=[1, 2, 3]))

        with pytest.raises(ServiceError, match="Unexpected response"):
            await client.current_state("abc")

    @pytest.mark.asyncio
    async def test_initialize_rejection(self, client, fake_service):
        fake_service.queue(
            "POST", "/api/fl/initialize", httpx.Response(400, json={"detail": "num_clients too large"})
        )

        with pytest.raises(InitializationError) as exc_info:
            await client.initialize("abc", {"num_clients": 50})

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "num_clients too large"

    @pytest.mark.asyncio
    async def test_initialize_error_status_in_body(self, client, fake_service):
        fake_service.queue(
            "POST", "/api/fl/initialize",
            httpx.Response(200, json={"status": "error", "message": "already running"}),
        )

        with pytest.raises(InitializationError, match="already running"):
            await client.initialize("abc", {"num_clients": 2})

    @pytest.mark.asyncio
    async def test_initialize_401_stays_session_error(self, client, fake_service):
        fake_service.queue("POST", "/api/fl/initialize", httpx.Response(401, json={}))

        with pytest.raises(SessionError):
            await client.initialize("abc", {"num_clients": 2})


class TestExtractErrorMessage:

    def test_prefers_error_field(self):
        response = httpx.Response(400, json={"error": "a", "detail": "b", "message": "c"})
        assert extract_error_message(response) == "a"

    def test_falls_back_to_detail_then_message(self):
        assert extract_error_message(httpx.Response(400, json={"detail": "b"})) == "b"
        assert extract_error_message(httpx.Response(400, json={"message": "c"})) == "c"

    def test_non_string_detail(self):
        response = httpx.Response(422, json={"detail": [{"loc": ["body"], "msg": "bad"}]})
        assert "bad" in extract_error_message(response)

    def test_empty_body(self):
        assert extract_error_message(httpx.Response(503)) == "HTTP error 503"
