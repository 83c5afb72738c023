"""Tests for the REST API engine."""

import base64

import httpx
import pytest

from grant_harvester.core.errors import AuthenticationError, SourceFailedError
from grant_harvester.core.http_client import HttpClient
from grant_harvester.core.models import (
    ApiKeyAuth,
    BasicAuth,
    BearerAuth,
    CursorPagination,
    OAuth2Auth,
    OffsetPagination,
    PagePagination,
    SourceConfiguration,
)
from grant_harvester.engines.api_client import ApiClientEngine, ApiClientOptions, default_has_more

API_URL = "https://api.example.org/grants"
TOKEN_URL = "https://auth.example.org/token"


def items(start: int, count: int) -> list[dict]:
    return [{"title": f"Grant {n}", "agency": "NSF"} for n in range(start, start + count)]


class ApiBackend:
    """Serves pages by request; records every request."""

    def __init__(self, pages=None, token=None, failing_from=None):
        self.pages = pages or {}
        self.token = token
        self.failing_from = failing_from
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url).startswith(TOKEN_URL):
            if self.token is None:
                return httpx.Response(200, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": self.token})

        index = len([r for r in self.requests if not str(r.url).startswith(TOKEN_URL)]) - 1
        if self.failing_from is not None and index >= self.failing_from:
            return httpx.Response(500)
        payload = self.pages.get(index, {"data": []})
        return httpx.Response(200, json=payload)

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if not str(r.url).startswith(TOKEN_URL)]


def make_source(**kwargs) -> SourceConfiguration:
    kwargs.setdefault("pagination", OffsetPagination(page_size=10, max_pages=2))
    return SourceConfiguration(id="api-source", url=API_URL, **kwargs)


async def run(backend: ApiBackend, source: SourceConfiguration, **engine_kwargs):
    async with HttpClient(transport=httpx.MockTransport(backend), max_retries=0) as client:
        engine = ApiClientEngine(http_client=client, **engine_kwargs)
        return await engine.scrape(source)


class TestPagination:
    """Tests for pagination strategies."""

    @pytest.mark.asyncio
    async def test_offset_pages(self):
        """Test offset parameters advance by page size up to max_pages."""
        backend = ApiBackend(pages={0: {"data": items(0, 10)}, 1: {"data": items(10, 10)}, 2: {"data": items(20, 10)}})
        records = await run(backend, make_source())

        params = [dict(r.url.params) for r in backend.api_requests]
        assert params == [{"limit": "10", "offset": "0"}, {"limit": "10", "offset": "10"}]
        assert len(records) == 20

    @pytest.mark.asyncio
    async def test_page_pages(self):
        """Test page-number parameters are 1-based."""
        backend = ApiBackend(pages={0: {"items": items(0, 5)}, 1: {"items": items(5, 2)}})
        await run(backend, make_source(pagination=PagePagination(page_size=5, max_pages=5)))

        params = [dict(r.url.params) for r in backend.api_requests]
        assert params == [{"page": "1", "per_page": "5"}, {"page": "2", "per_page": "5"}]

    @pytest.mark.asyncio
    async def test_cursor_pages(self):
        """Test the cursor from each response is sent with the next request."""
        backend = ApiBackend(pages={
            0: {"results": items(0, 3), "nextCursor": "abc"},
            1: {"results": items(3, 3)},
        })
        records = await run(backend, make_source(pagination=CursorPagination(page_size=3, max_pages=5)))

        assert "cursor" not in backend.api_requests[0].url.params
        assert backend.api_requests[1].url.params["cursor"] == "abc"
        assert len(backend.api_requests) == 2
        assert len(records) == 6

    @pytest.mark.asyncio
    async def test_short_page_stops(self):
        """Test a partial page ends pagination."""
        backend = ApiBackend(pages={0: {"data": items(0, 4)}})
        await run(backend, make_source(pagination=OffsetPagination(page_size=10, max_pages=5)))
        assert len(backend.api_requests) == 1

    @pytest.mark.asyncio
    async def test_has_more_flag(self):
        """Test an explicit hasMore flag is honoured."""
        backend = ApiBackend(pages={0: {"data": items(0, 10), "hasMore": False}})
        await run(backend, make_source(pagination=OffsetPagination(page_size=10, max_pages=5)))
        assert len(backend.api_requests) == 1

    @pytest.mark.asyncio
    async def test_custom_has_more(self):
        """Test a replacement has_more decision."""
        backend = ApiBackend(pages={0: {"data": items(0, 2)}, 1: {"data": items(2, 2)}})
        await run(
            backend,
            make_source(pagination=OffsetPagination(page_size=10, max_pages=5)),
            has_more=lambda payload, page_index, page_items, pagination: page_index == 0,
        )
        assert len(backend.api_requests) == 2

    def test_default_has_more_total_pages(self):
        """Test totalPages bounds the page count."""
        pagination = OffsetPagination(page_size=10)
        assert default_has_more({"totalPages": 3}, 1, [], pagination) is True
        assert default_has_more({"totalPages": 3}, 2, [], pagination) is False


class TestErrors:
    """Tests for page failure handling."""

    @pytest.mark.asyncio
    async def test_first_page_failure_raises(self):
        """Test a failing first page fails the source."""
        backend = ApiBackend(failing_from=0)
        with pytest.raises(SourceFailedError):
            await run(backend, make_source())

    @pytest.mark.asyncio
    async def test_later_failures_tolerated(self):
        """Test consecutive later failures stop pagination but keep data."""
        backend = ApiBackend(pages={0: {"data": items(0, 2)}}, failing_from=1)
        records = await run(
            backend,
            make_source(pagination=OffsetPagination(page_size=2, max_pages=10)),
            options=ApiClientOptions(max_consecutive_errors=3),
        )

        assert len(records) == 2
        assert len(backend.api_requests) == 4


class TestAuthentication:
    """Tests for credential resolution."""

    @pytest.mark.asyncio
    async def test_bearer(self):
        """Test bearer tokens go in the Authorization header."""
        backend = ApiBackend()
        await run(backend, make_source(authentication=BearerAuth(token="secret")))
        assert backend.api_requests[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_basic(self):
        """Test basic credentials are base64 encoded."""
        backend = ApiBackend()
        await run(backend, make_source(authentication=BasicAuth(username="user", password="pass")))
        expected = "Basic " + base64.b64encode(b"user:pass").decode()
        assert backend.api_requests[0].headers["Authorization"] == expected

    @pytest.mark.asyncio
    async def test_api_key_header(self):
        """Test API keys are sent as the Authorization header by default."""
        backend = ApiBackend()
        await run(backend, make_source(authentication=ApiKeyAuth(api_key="k-123")))
        assert backend.api_requests[0].headers["Authorization"] == "k-123"

    @pytest.mark.asyncio
    async def test_api_key_query_param(self):
        """Test API keys can be sent as a query parameter."""
        backend = ApiBackend()
        await run(
            backend,
            make_source(authentication=ApiKeyAuth(api_key="k-123")),
            options=ApiClientOptions(api_key_param="api_key"),
        )
        request = backend.api_requests[0]
        assert request.url.params["api_key"] == "k-123"
        assert "Authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_oauth2(self):
        """Test client credentials are exchanged for a bearer token."""
        backend = ApiBackend(token="xyz")
        auth = OAuth2Auth(token_endpoint=TOKEN_URL, client_id="id", client_secret="secret", scope="read")
        await run(backend, make_source(authentication=auth))

        token_request = backend.requests[0]
        assert token_request.method == "POST"
        form = dict(pair.split("=") for pair in token_request.content.decode().split("&"))
        assert form["grant_type"] == "client_credentials"
        assert form["scope"] == "read"
        assert backend.api_requests[0].headers["Authorization"] == "Bearer xyz"

    @pytest.mark.asyncio
    async def test_oauth2_without_token(self):
        """Test a token response without access_token is an authentication failure."""
        backend = ApiBackend(token=None)
        auth = OAuth2Auth(token_endpoint=TOKEN_URL, client_id="id", client_secret="secret")
        with pytest.raises(AuthenticationError):
            await run(backend, make_source(authentication=auth))
        assert backend.api_requests == []


class TestMapping:
    """Tests for item mapping."""

    @pytest.mark.asyncio
    async def test_aliases(self):
        """Test alternate field names are mapped."""
        item = {
            "name": "Ocean Research",
            "summary": "Marine science.",
            "closeDate": "2024-09-30",
            "awardAmount": 250000,
            "applyUrl": "https://example.org/apply",
            "sponsor": "NOAA",
        }
        backend = ApiBackend(pages={0: {"data": [item]}})
        records = await run(backend, make_source())

        record = records[0]
        assert record.title == "Ocean Research"
        assert record.description == "Marine science."
        assert record.deadline == "2024-09-30"
        assert record.funding_amount == "250000"
        assert record.application_url == "https://example.org/apply"
        assert record.funder_name == "NOAA"
        assert record.raw_content == item

    @pytest.mark.asyncio
    async def test_untitled_and_non_objects_dropped(self):
        """Test items without title and non-object items are skipped."""
        backend = ApiBackend(pages={0: {"data": [{"summary": "no title"}, "junk", {"title": "Kept"}]}})
        records = await run(backend, make_source())
        assert [r.title for r in records] == ["Kept"]

    @pytest.mark.asyncio
    async def test_items_key_and_query_params(self):
        """Test a custom items key and fixed query parameters."""
        backend = ApiBackend(pages={0: {"hits": items(0, 1)}})
        records = await run(
            backend,
            make_source(),
            options=ApiClientOptions(items_key="hits", query_params={"format": "json"}),
        )
        assert len(records) == 1
        assert backend.api_requests[0].url.params["format"] == "json"

    @pytest.mark.asyncio
    async def test_custom_mapper(self):
        """Test a replacement item mapper."""
        backend = ApiBackend(pages={0: [{"t": "Raw"}]})
        records = await run(
            backend,
            make_source(),
            item_mapper=lambda item, source: None,
        )
        assert records == []
        assert len(backend.api_requests) == 1
