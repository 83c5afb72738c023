"""Tests for the static HTML engine."""

import httpx
import pytest

from grant_harvester.core.errors import ContentTypeError, PermanentHTTPError, SourceFailedError
from grant_harvester.core.http_client import HttpClient
from grant_harvester.core.models import UNKNOWN_FUNDER, RateLimitConfig, SourceConfiguration, SourceSelectors
from grant_harvester.engines.base import create_engine
from grant_harvester.engines.static_parser import StaticParserEngine

LISTING_HTML = """
<html><body>
  <div class="grant">
    <h3>Arts Grant</h3>
    <p class="desc">Support for local artists.</p>
    <span class="deadline">Deadline: June 1, 2024</span>
    <a class="apply" href="/apply/1">Apply</a>
  </div>
  <div class="grant">
    <p class="desc">A container without a heading.</p>
  </div>
  <div class="grant">
    <h3>Health Grant</h3>
    <span class="amount">$10,000</span>
    <span class="funder">City Foundation</span>
  </div>
</body></html>
"""


@pytest.fixture
def source():
    """Listing source with container-scoped selectors."""
    return SourceConfiguration(
        id="test-listing",
        url="https://example.org/grants",
        selectors=SourceSelectors(
            grant_container=".grant",
            title="h3",
            description=".desc",
            deadline=".deadline",
            funding_amount=".amount",
            application_url=".apply",
            funder_info=".funder",
        ),
        rate_limit=RateLimitConfig(delay_between_requests=0.0),
    )


def serve(response: httpx.Response) -> HttpClient:
    return HttpClient(
        transport=httpx.MockTransport(lambda request: response),
        max_retries=0,
    )


class TestParse:
    """Tests for StaticParserEngine.parse."""

    def test_keeps_titled_containers_in_order(self, source):
        """Test untitled containers are dropped and order is kept."""
        records = StaticParserEngine().parse(LISTING_HTML, source)
        assert [r.title for r in records] == ["Arts Grant", "Health Grant"]

    def test_fields_scoped_per_container(self, source):
        """Test each record only sees its own container's fields."""
        arts, health = StaticParserEngine().parse(LISTING_HTML, source)

        assert arts.description == "Support for local artists."
        assert arts.deadline == "Deadline: June 1, 2024"
        assert arts.application_url == "https://example.org/apply/1"
        assert arts.funding_amount is None
        assert arts.funder_name == UNKNOWN_FUNDER

        assert health.funding_amount == "$10,000"
        assert health.funder_name == "City Foundation"
        assert health.description is None

    def test_raw_content(self, source):
        """Test the container markup is kept."""
        records = StaticParserEngine().parse(LISTING_HTML, source)
        assert records[0].raw_content["engine"] == "static"
        assert "<h3>Arts Grant</h3>" in records[0].raw_content["html"]
        assert records[0].source_url == source.url

    def test_no_containers(self, source):
        """Test a page without containers gives no records."""
        assert StaticParserEngine().parse("<html><body><p>Nothing</p></body></html>", source) == []


class TestScrape:
    """Tests for StaticParserEngine.scrape."""

    @pytest.mark.asyncio
    async def test_scrape(self, source):
        """Test fetch and extraction through the transport."""
        response = httpx.Response(200, text=LISTING_HTML, headers={"content-type": "text/html; charset=utf-8"})
        async with serve(response) as client:
            records = await StaticParserEngine(http_client=client).scrape(source)
        assert len(records) == 2

    @pytest.mark.asyncio
    async def test_http_error_wrapped(self, source):
        """Test HTTP failures become source failures."""
        async with serve(httpx.Response(404)) as client:
            with pytest.raises(SourceFailedError) as exc_info:
                await StaticParserEngine(http_client=client).scrape(source)
        assert isinstance(exc_info.value.cause, PermanentHTTPError)
        assert exc_info.value.source_id == "test-listing"

    @pytest.mark.asyncio
    async def test_non_markup_rejected(self, source):
        """Test binary responses are rejected."""
        response = httpx.Response(200, content=b"%PDF-1.7", headers={"content-type": "application/pdf"})
        async with serve(response) as client:
            with pytest.raises(SourceFailedError) as exc_info:
                await StaticParserEngine(http_client=client).scrape(source)
        assert isinstance(exc_info.value.cause, ContentTypeError)

    @pytest.mark.asyncio
    async def test_unexpected_success_status(self, source):
        """Test statuses other than 200 are rejected."""
        async with serve(httpx.Response(204)) as client:
            with pytest.raises(SourceFailedError):
                await StaticParserEngine(http_client=client).scrape(source)


class TestRegistry:
    """Tests for the engine registry."""

    def test_create_static(self):
        """Test the registry builds the static engine."""
        assert isinstance(create_engine("static"), StaticParserEngine)

    def test_unknown_engine(self):
        """Test unknown kinds are rejected."""
        with pytest.raises(ValueError):
            create_engine("telepathy")
