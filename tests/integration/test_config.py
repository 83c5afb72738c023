"""Integration tests for the packaged source configuration."""

import pytest

from grant_harvester.config import load_sources
from grant_harvester.core.models import ApiKeyAuth, EngineKind, OffsetPagination, SourceType
from grant_harvester.session import HarvestSession
from grant_harvester.sources import FordFoundationAdapter, GrantsGovAdapter, WorldBankAdapter


@pytest.fixture
def sources(monkeypatch):
    monkeypatch.delenv("GRANTS_GOV_API_KEY", raising=False)
    return {source.id: source for source in load_sources()}


class TestPackagedSources:
    """Tests for the bundled sources.yml."""

    def test_enabled_sources(self, sources):
        """Test disabled sources are left out."""
        assert list(sources) == ["grants-gov", "ford-foundation", "world-bank"]

    def test_grants_gov(self, sources):
        """Test the API source without a key."""
        source = sources["grants-gov"]
        assert source.engine == EngineKind.API
        assert source.type == SourceType.GOV
        assert source.authentication is None
        assert source.pagination == OffsetPagination(page_size=1000, max_pages=10)
        assert source.rate_limit.requests_per_minute == 30

    def test_grants_gov_with_key(self, monkeypatch):
        """Test the key is substituted from the environment."""
        monkeypatch.setenv("GRANTS_GOV_API_KEY", "gg-key")
        source = {s.id: s for s in load_sources()}["grants-gov"]
        assert source.authentication == ApiKeyAuth(api_key="gg-key")

    def test_selectors(self, sources):
        """Test listing sources carry selectors."""
        assert ".grant-item" in sources["ford-foundation"].selectors.grant_container
        assert sources["world-bank"].engine == EngineKind.BROWSER
        assert sources["ford-foundation"].headers["DNT"] == "1"

    @pytest.mark.asyncio
    async def test_dedicated_adapters(self, sources):
        """Test configured entries are handled by their dedicated adapters."""
        async with HarvestSession() as session:
            adapters = {sid: session.build_adapter(source) for sid, source in sources.items()}

        assert isinstance(adapters["grants-gov"], GrantsGovAdapter)
        assert isinstance(adapters["ford-foundation"], FordFoundationAdapter)
        assert isinstance(adapters["world-bank"], WorldBankAdapter)
        assert adapters["ford-foundation"].source is sources["ford-foundation"]
