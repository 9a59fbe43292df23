"""
Unit tests for the HTTP capability client.
"""

import pytest
import pytest_asyncio
from httpx import ConnectError, Request, Response, TimeoutException

from studyloop.errors import CapabilityFailure, CapabilityTimeout, InvalidInput
from studyloop.gateway.capabilities import Capabilities, HttpCapabilityClient
from studyloop.gateway.gateway import CapabilityCall, CapabilityGateway
from studyloop.gateway.retry import RetryPolicy


@pytest_asyncio.fixture
async def client(settings):
    """Create a test client against a placeholder host."""
    client = HttpCapabilityClient(base_url="http://capabilities.test/", settings=settings)
    yield client
    await client.close()


def make_call(capability="classify_topic", payload=None):
    return CapabilityCall(capability, payload or {"text": "2 + 2"}, deadline=0.0, attempt=1)


def respond_with(status, json=None, content=None):
    async def mock_post(url, **kwargs):
        request = Request("POST", f"http://capabilities.test{url}")
        if content is not None:
            return Response(status, content=content, request=request)
        return Response(status, json=json, request=request)

    return mock_post


class TestHttpCapabilityClient:
    """Tests for HttpCapabilityClient.call."""

    def test_base_url_normalized(self, client):
        assert client.base_url == "http://capabilities.test"

    def test_handlers_cover_every_capability(self, client):
        assert set(client.handlers()) == {
            "generate_text",
            "extract_text",
            "search_index",
            "render_job",
            "classify_topic",
        }

    @pytest.mark.asyncio
    async def test_posts_payload_to_capability_path(self, client, monkeypatch):
        """Test the request shape."""
        seen = {}

        async def mock_post(url, **kwargs):
            seen["url"] = url
            seen["json"] = kwargs["json"]
            return Response(200, json={"topic_id": "algebra"}, request=Request("POST", url))

        monkeypatch.setattr(client.client, "post", mock_post)

        result = await client.call(make_call())

        assert result == {"topic_id": "algebra"}
        assert seen == {"url": "/classify_topic", "json": {"text": "2 + 2"}}

    @pytest.mark.asyncio
    async def test_rate_limited(self, client, monkeypatch):
        monkeypatch.setattr(client.client, "post", respond_with(429, json={}))

        with pytest.raises(CapabilityFailure) as exc_info:
            await client.call(make_call())

        assert exc_info.value.kind == CapabilityFailure.RATE_LIMITED
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_server_error(self, client, monkeypatch):
        monkeypatch.setattr(client.client, "post", respond_with(503, json={"error": "busy"}))

        with pytest.raises(CapabilityFailure) as exc_info:
            await client.call(make_call())

        assert exc_info.value.kind == CapabilityFailure.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_client_error_is_invalid_input(self, client, monkeypatch):
        monkeypatch.setattr(client.client, "post", respond_with(422, json={"detail": "bad"}))

        with pytest.raises(InvalidInput):
            await client.call(make_call())

    @pytest.mark.asyncio
    async def test_timeout(self, client, monkeypatch):
        async def mock_post(url, **kwargs):
            raise TimeoutException("Timeout")

        monkeypatch.setattr(client.client, "post", mock_post)

        with pytest.raises(CapabilityTimeout):
            await client.call(make_call())

    @pytest.mark.asyncio
    async def test_connection_error(self, client, monkeypatch):
        async def mock_post(url, **kwargs):
            raise ConnectError("Connection refused")

        monkeypatch.setattr(client.client, "post", mock_post)

        with pytest.raises(CapabilityFailure) as exc_info:
            await client.call(make_call())

        assert exc_info.value.kind == CapabilityFailure.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_non_json_body(self, client, monkeypatch):
        monkeypatch.setattr(client.client, "post", respond_with(200, content=b"<html>oops</html>"))

        with pytest.raises(CapabilityFailure) as exc_info:
            await client.call(make_call())

        assert exc_info.value.kind == CapabilityFailure.MALFORMED


class TestThroughGateway:
    """The client behind the gateway, as wired in production."""

    @pytest.mark.asyncio
    async def test_server_error_retried_then_succeeds(self, client, settings, sleep, monkeypatch):
        call_count = 0

        async def mock_post(url, **kwargs):
            nonlocal call_count
            call_count += 1
            request = Request("POST", url)
            if call_count < 2:
                return Response(500, json={"error": "Internal error"}, request=request)
            return Response(200, json={"text": "Photosynthesis turns light into sugar"}, request=request)

        monkeypatch.setattr(client.client, "post", mock_post)
        gateway = CapabilityGateway(
            client.handlers(),
            settings=settings,
            retry=RetryPolicy(attempts=3, jitter=0.0),
            sleep=sleep,
        )

        text = await Capabilities(gateway).generate_text("Explain photosynthesis", 100)

        assert call_count == 2
        assert sleep.delays == [1.0]
        assert text.startswith("Photosynthesis")
