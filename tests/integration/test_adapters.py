"""Integration tests for source adapters with scripted engines."""

from dataclasses import replace

import httpx
import pytest
from playwright.async_api import Error as PlaywrightError

from grant_harvester.core.errors import CircuitOpenError, SourceFailedError, TransientHTTPError
from grant_harvester.core.http_client import HttpClient
from grant_harvester.core.models import (
    CircuitBreakerConfig,
    EngineKind,
    OffsetPagination,
    RateLimitConfig,
    RawGrantData,
    SourceConfiguration,
)
from grant_harvester.core.retry_manager import RetryManager
from grant_harvester.engines.api_client import ApiClientEngine
from grant_harvester.engines.browser import BrowserEngine
from grant_harvester.sources import SourceAdapter, adapter_for
from grant_harvester.sources.ford_foundation import ALTERNATIVE_URLS, BASE_URL, LISTING_URL, FordFoundationAdapter
from grant_harvester.sources.grants_gov import OPPORTUNITY_URL, GrantsGovAdapter
from grant_harvester.sources.world_bank import PROCUREMENT_URL, PROJECTS_API_URL, WorldBankAdapter


async def no_sleep(seconds: float) -> None:
    """Skip retry back-offs."""


class ScriptedEngine:
    """
    Engine double.

    ``results`` maps URLs to a record list or an exception; ``default``
    answers every other URL. A tuple of outcomes is consumed call by call;
    a callable outcome is called with the source.
    """

    def __init__(self, results=None, default=None):
        self.results = results or {}
        self.default = [] if default is None else default
        self.calls: list[str] = []

    async def scrape(self, source: SourceConfiguration) -> list[RawGrantData]:
        self.calls.append(source.url)
        outcome = self.results.get(source.url, self.default)
        if isinstance(outcome, tuple):
            outcome, rest = outcome[0], outcome[1:]
            self.results[source.url] = rest if len(rest) > 1 else rest[0]
        if callable(outcome):
            outcome = outcome(source)
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)


class MissingBrowserPlaywright:
    """Playwright double whose Chromium executable is not installed."""

    def __init__(self):
        self.chromium = self

    def __call__(self):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def launch(self, **options):
        raise PlaywrightError("Executable doesn't exist at /ms-playwright/chromium/chrome")


def record(title: str, url: str = "https://example.org", **kwargs) -> RawGrantData:
    return RawGrantData(title=title, source_url=url, **kwargs)


def source_failure(url: str, cause: Exception) -> SourceFailedError:
    return SourceFailedError("test-source", url, cause)


class TestGrantsGovAdapter:
    """Tests for the Grants.gov API adapter."""

    OPPORTUNITIES = {
        "0": {
            "totalHits": 3,
            "oppHits": [
                {
                    "oppId": "101",
                    "oppTitle": "Rural Health Outreach",
                    "agencyName": "HRSA",
                    "closeDate": "09/30/2024",
                    "awardFloor": 10000,
                    "awardCeiling": 50000,
                    "expectedNumberOfAwards": 20,
                    "applicantTypes": ["Nonprofits", "Tribal governments"],
                    "oppDescription": "Support rural clinics.",
                },
                {"oppId": "102", "agencyName": "HRSA"},
            ],
        },
        "2": {
            "totalHits": 3,
            "oppHits": [{"oppId": "103", "oppTitle": "Coastal Resilience", "awardCeiling": 75000}],
        },
    }

    @pytest.mark.asyncio
    async def test_paginated_harvest(self, monkeypatch):
        """Test totalHits drives pagination and opportunities are mapped."""
        monkeypatch.delenv("GRANTS_GOV_API_KEY", raising=False)
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(dict(request.url.params))
            return httpx.Response(200, json=self.OPPORTUNITIES[request.url.params["start"]])

        base = GrantsGovAdapter()
        source = replace(base.source, pagination=OffsetPagination(page_size=2, max_pages=5))

        async with HttpClient(transport=httpx.MockTransport(handler), max_retries=0) as client:
            engine = ApiClientEngine(http_client=client, **base.default_engine_options()[EngineKind.API])
            report = await GrantsGovAdapter(source=source, engines={EngineKind.API: engine}).harvest()

        assert [p["start"] for p in seen] == ["0", "2"]
        assert seen[0]["rows"] == "2"
        assert seen[0]["format"] == "json"
        assert "api_key" not in seen[0]

        assert [r.title for r in report.records] == ["Rural Health Outreach", "Coastal Resilience"]
        first = report.records[0]
        assert first.funding_amount == "$10000 - $50000 | Expected Awards: 20"
        assert first.eligibility == "Eligible Applicants: Nonprofits, Tribal governments"
        assert first.application_url == OPPORTUNITY_URL.format(opp_id="101")
        assert first.funder_name == "HRSA"
        assert first.raw_content["oppId"] == "101"
        assert report.records[1].funding_amount == "Up to $75000"
        assert report.engines_used == ["api"]
        assert report.errors == []

    def test_api_key_from_environment(self, monkeypatch):
        """Test the key is picked up from the environment."""
        monkeypatch.setenv("GRANTS_GOV_API_KEY", "gg-key")
        assert GrantsGovAdapter().source.authentication.api_key == "gg-key"


class TestFordFoundationAdapter:
    """Tests for the Ford Foundation multi-page strategy."""

    def ford_record(self):
        return record(
            "Women's Economic Justice Fund",
            description="Advocacy for racial justice and civil rights of women in the United States.",
            application_url="/work/apply",
        )

    @pytest.mark.asyncio
    async def test_alternative_pages(self):
        """Test static and browser are tried before alternative pages."""
        static = ScriptedEngine({ALTERNATIVE_URLS[0]: [self.ford_record()]})
        browser = ScriptedEngine()
        adapter = FordFoundationAdapter(engines={EngineKind.STATIC: static, EngineKind.BROWSER: browser})

        report = await adapter.harvest()

        assert static.calls == [LISTING_URL, ALTERNATIVE_URLS[0]]
        assert browser.calls == [LISTING_URL]
        assert report.engines_used == ["static", "browser"]

        grant = report.records[0]
        assert grant.application_url == f"{BASE_URL}/work/apply"
        assert grant.funder_name == "Ford Foundation"
        assert grant.raw_content["ford_program"] == "Gender, Racial and Ethnic Justice"
        assert grant.raw_content["inferred_category"] == "social_services"
        assert grant.raw_content["social_justice_focus"] == ["Racial Justice", "Civil Rights"]
        assert grant.raw_content["target_communities"] == ["Women"]
        assert grant.raw_content["geographic_scope"] == ["United States"]

    @pytest.mark.asyncio
    async def test_static_failure_falls_back_to_browser(self):
        """Test a failing static engine is recorded and the browser still runs."""
        static = ScriptedEngine({LISTING_URL: source_failure(LISTING_URL, TransientHTTPError(503, LISTING_URL))})
        browser = ScriptedEngine({LISTING_URL: [self.ford_record()]})
        adapter = FordFoundationAdapter(engines={EngineKind.STATIC: static, EngineKind.BROWSER: browser})

        report = await adapter.harvest()

        assert report.count == 1
        assert report.partial
        assert isinstance(report.errors[0], SourceFailedError)

    @pytest.mark.asyncio
    async def test_nothing_found(self):
        """Test every page is tried when none yields records."""
        static, browser = ScriptedEngine(), ScriptedEngine()
        adapter = FordFoundationAdapter(engines={EngineKind.STATIC: static, EngineKind.BROWSER: browser})

        report = await adapter.harvest()

        assert report.records == []
        assert len(static.calls) == len(ALTERNATIVE_URLS) + 1
        assert len(browser.calls) == len(ALTERNATIVE_URLS) + 1
        assert not report.failed


class TestWorldBankAdapter:
    """Tests for the World Bank combined strategy."""

    @pytest.fixture
    def source(self):
        return replace(WorldBankAdapter().source, rate_limit=RateLimitConfig(delay_between_requests=0.0))

    @pytest.mark.asyncio
    async def test_partial_success(self, source):
        """Test a failing API leaves browser records in a partial report."""
        api = ScriptedEngine(default=source_failure(PROJECTS_API_URL, TransientHTTPError(503, PROJECTS_API_URL)))
        browser = ScriptedEngine(default=lambda s: [record(
            "Rural Roads Procurement",
            url=s.url,
            description="Contract for rural road infrastructure in Kenya.",
            funding_amount="$2,000,000",
        )])
        adapter = WorldBankAdapter(source=source, engines={EngineKind.API: api, EngineKind.BROWSER: browser})

        report = await adapter.harvest()

        assert api.calls == [PROJECTS_API_URL]
        assert browser.calls[0] == PROCUREMENT_URL
        assert len(browser.calls) == 4
        assert report.partial
        assert report.engines_used == ["api", "browser"]
        assert report.count == 1

        grant = report.records[0]
        assert grant.funder_name == "World Bank"
        assert grant.raw_content["detected_language"] == "en"
        assert grant.raw_content["region_info"] == ["sub-saharan-africa"]
        assert grant.raw_content["category"] == "community_development"
        assert grant.raw_content["funding_type"] == "procurement"
        assert grant.raw_content["tags"][-2:] == ["procurement", "investment-lending"]
        assert grant.raw_content["converted_amount_usd"] == {"min": 2000000.0, "max": 2000000.0}

    @pytest.mark.asyncio
    async def test_browser_launch_failure_keeps_api_records(self, source):
        """Test API records survive when the browser cannot be started."""
        api = ScriptedEngine(default=[record("Coastal Resilience Program", url=PROJECTS_API_URL)])
        browser = BrowserEngine(playwright_factory=MissingBrowserPlaywright())
        adapter = WorldBankAdapter(source=source, engines={EngineKind.API: api, EngineKind.BROWSER: browser})

        report = await adapter.harvest()

        assert [r.title for r in report.records] == ["Coastal Resilience Program"]
        assert report.partial
        assert len(report.errors) == 4
        assert all(isinstance(e, SourceFailedError) for e in report.errors)
        assert isinstance(report.errors[0].cause, PlaywrightError)

    @pytest.mark.asyncio
    async def test_spanish_listing_normalized(self, source):
        """Test local funder names are rewritten for Spanish listings."""
        browser = ScriptedEngine({PROCUREMENT_URL: [record(
            "Proyecto de desarrollo rural",
            description="Financiamiento del Banco Mundial para proyecto de desarrollo en América Latina.",
        )]})
        adapter = WorldBankAdapter(source=source, engines={EngineKind.API: ScriptedEngine(), EngineKind.BROWSER: browser})

        report = await adapter.harvest()

        grant = report.records[0]
        assert grant.raw_content["detected_language"] == "es"
        assert "World Bank" in grant.description
        assert "Banco Mundial" in grant.raw_content["original_description"]


class TestSourceAdapter:
    """Tests for the plain adapter with retries and circuit breaking."""

    @pytest.fixture
    def source(self):
        return SourceConfiguration(id="city-arts", url="https://arts.example.org/grants")

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self, source):
        """Test an engine failing twice with 503 succeeds on the third attempt."""
        failure = source_failure(source.url, TransientHTTPError(503, source.url))
        engine = ScriptedEngine({source.url: (failure, failure, [record("Arts Grant")])})
        adapter = SourceAdapter(
            source,
            engines={EngineKind.STATIC: engine},
            retry_manager=RetryManager(sleep=no_sleep),
        )

        report = await adapter.harvest()

        assert len(engine.calls) == 3
        assert [r.title for r in report.records] == ["Arts Grant"]
        assert report.errors == []

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, source):
        """Test a permanent failure is reported after one attempt."""
        engine = ScriptedEngine(default=source_failure(source.url, ValueError("bad markup")))
        adapter = SourceAdapter(
            source,
            engines={EngineKind.STATIC: engine},
            retry_manager=RetryManager(sleep=no_sleep),
        )

        report = await adapter.harvest()

        assert len(engine.calls) == 1
        assert report.failed

    @pytest.mark.asyncio
    async def test_open_circuit_skips_engine(self, source):
        """Test an open circuit short-circuits later harvests."""
        engine = ScriptedEngine(default=source_failure(source.url, ValueError("bad markup")))
        manager = RetryManager(sleep=no_sleep)
        adapter = SourceAdapter(
            source,
            engines={EngineKind.STATIC: engine},
            retry_manager=manager,
            circuit=CircuitBreakerConfig(failure_threshold=1),
        )

        await adapter.harvest()
        report = await adapter.harvest()

        assert len(engine.calls) == 1
        assert isinstance(report.errors[0], CircuitOpenError)

    @pytest.mark.asyncio
    async def test_duplicates_removed(self, source):
        """Test records with the same title and funder are merged."""
        engine = ScriptedEngine(default=[record("Arts Grant"), record("ARTS grant!"), record("Music Grant")])
        report = await SourceAdapter(source, engines={EngineKind.STATIC: engine}).harvest()
        assert [r.title for r in report.records] == ["Arts Grant", "Music Grant"]

    def test_adapter_lookup(self):
        """Test dedicated adapters are found by source id."""
        assert adapter_for("world-bank") is WorldBankAdapter
        assert adapter_for("city-arts") is SourceAdapter

    def test_source_required(self):
        """Test the plain adapter needs a configuration."""
        with pytest.raises(ValueError):
            SourceAdapter()
