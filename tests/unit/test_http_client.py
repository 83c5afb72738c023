"""Tests for the async HTTP transport."""

import httpx
import pytest

from grant_harvester.core.errors import PermanentHTTPError, TransientHTTPError
from grant_harvester.core.http_client import USER_AGENTS, HttpClient, parse_retry_after


class Backend:
    """Scripted responses served through httpx.MockTransport."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def make_client(backend: Backend, **kwargs) -> HttpClient:
    kwargs.setdefault("retry_base_delay", 0.0)
    kwargs.setdefault("retry_max_delay", 0.0)
    return HttpClient(transport=httpx.MockTransport(backend), **kwargs)


class TestRequest:
    """Tests for HttpClient.request."""

    @pytest.mark.asyncio
    async def test_retries_transient_status(self):
        """Test a 503 is retried and the later 200 returned."""
        backend = Backend(
            httpx.Response(503, headers={"Retry-After": "0"}),
            httpx.Response(200, text="ok"),
        )
        async with make_client(backend, max_retries=2) as client:
            response = await client.get("https://example.org/grants")

        assert response.text == "ok"
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_transient_status_exhausted(self):
        """Test a persistent 503 surfaces after the retry budget."""
        backend = Backend(httpx.Response(503))
        async with make_client(backend, max_retries=1) as client:
            with pytest.raises(TransientHTTPError) as exc_info:
                await client.get("https://example.org/grants")

        assert exc_info.value.status_code == 503
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_permanent_status_not_retried(self):
        """Test a 404 raises immediately."""
        backend = Backend(httpx.Response(404))
        async with make_client(backend, max_retries=3) as client:
            with pytest.raises(PermanentHTTPError) as exc_info:
                await client.get("https://example.org/missing")

        assert exc_info.value.status_code == 404
        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_network_error_retried(self):
        """Test connection failures are retried."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, text="ok")

        client = HttpClient(transport=httpx.MockTransport(handler), retry_base_delay=0.0, retry_max_delay=0.0)
        async with client:
            assert await client.get_text("https://example.org") == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_user_agent_rotation(self):
        """Test each request uses the next user agent."""
        backend = Backend(httpx.Response(200))
        async with make_client(backend) as client:
            await client.get("https://example.org/1")
            await client.get("https://example.org/2")

        agents = [r.headers["User-Agent"] for r in backend.requests]
        assert agents == USER_AGENTS[:2]

    @pytest.mark.asyncio
    async def test_custom_headers(self):
        """Test client and per-request headers are sent."""
        backend = Backend(httpx.Response(200))
        async with make_client(backend, headers={"DNT": "1"}) as client:
            await client.get("https://example.org", headers={"Accept": "application/json"})

        request = backend.requests[0]
        assert request.headers["DNT"] == "1"
        assert request.headers["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_get_json(self):
        """Test JSON decoding."""
        backend = Backend(httpx.Response(200, json={"items": [1, 2]}))
        async with make_client(backend) as client:
            assert await client.get_json("https://example.org/api") == {"items": [1, 2]}

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        """Test malformed JSON is a permanent failure."""
        backend = Backend(httpx.Response(200, text="<html>"))
        async with make_client(backend) as client:
            with pytest.raises(PermanentHTTPError):
                await client.get_json("https://example.org/api")

    @pytest.mark.asyncio
    async def test_request_count(self):
        """Test requests are counted."""
        backend = Backend(httpx.Response(200))
        async with make_client(backend) as client:
            await client.get("https://example.org")
            await client.post("https://example.org", data={"a": "1"})
            assert client.stats["request_count"] == 2

    @pytest.mark.asyncio
    async def test_requires_context(self):
        """Test requests outside the context manager fail."""
        client = make_client(Backend(httpx.Response(200)))
        with pytest.raises(RuntimeError):
            await client.get("https://example.org")


class TestParseRetryAfter:
    """Tests for parse_retry_after function."""

    def test_seconds(self):
        """Test numeric header."""
        assert parse_retry_after("120") == 120.0

    def test_http_date_in_past(self):
        """Test dates in the past give zero."""
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0

    def test_invalid(self):
        """Test missing or invalid headers give None."""
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None
