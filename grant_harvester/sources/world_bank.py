"""
World Bank adapter.

Combines three harvests, each allowed to fail on its own: the projects
API, the procurement opportunities page and a set of program pages. The
merged records are cleaned per detected language, converted to USD and
tagged with World Bank metadata.
"""

import asyncio
import os
import time
from dataclasses import replace
from typing import Any, Optional

from grant_harvester.core.errors import ScrapingError
from grant_harvester.core.models import (
    ApiKeyAuth,
    EngineKind,
    GrantCategory,
    OffsetPagination,
    RateLimitConfig,
    RawGrantData,
    SourceConfiguration,
    SourceSelectors,
    SourceType,
)
from grant_harvester.engines.api_client import ApiClientEngine, ApiClientOptions
from grant_harvester.engines.browser import BrowserOptions
from grant_harvester.engines.static_parser import StaticParserOptions

from .base import AdapterReport, SourceAdapter, dedupe_records, merge_raw_content
from .enrichment import (
    clean_multilingual_text,
    convert_to_usd,
    detect_funding_type,
    detect_language,
    extract_regions,
    extract_tags,
    infer_category,
)

FUNDER_NAME = "World Bank"
PROJECTS_API_URL = "https://search.worldbank.org/api/v2/wds"
PROCUREMENT_URL = "https://www.worldbank.org/en/projects-operations/procurement/opportunities"

PROGRAM_PAGE_URLS = [
    PROCUREMENT_URL,
    "https://www.worldbank.org/en/about/careers/programs-and-internships",
    "https://www.worldbank.org/en/programs/grants-and-economic-development",
]

PROCUREMENT_SELECTORS = SourceSelectors(
    grant_container=".procurement-opportunity, .major-contract, .opportunity-card",
    title=".opportunity-title, .contract-title, h3",
    description=".opportunity-summary, .contract-description",
    deadline=".closing-date, .submission-deadline",
    funding_amount=".contract-value, .estimated-cost",
    eligibility=".eligible-firms, .participation-requirements",
    application_url=".opportunity-link, .tender-link",
    funder_info=".implementing-agency, .borrower-country",
)

CATEGORY_KEYWORDS = {
    GrantCategory.COMMUNITY_DEVELOPMENT: [
        "development", "poverty", "economic", "infrastructure", "urban", "rural",
        "governance", "institutional", "capacity building", "social protection",
    ],
    GrantCategory.ENVIRONMENT_SUSTAINABILITY: [
        "environment", "climate", "sustainability", "renewable energy", "carbon",
        "green", "biodiversity", "forest", "water management", "pollution",
    ],
    GrantCategory.HEALTHCARE_PUBLIC_HEALTH: [
        "health", "medical", "healthcare", "hospital", "nutrition", "pandemic",
        "disease", "maternal", "child health", "immunization",
    ],
    GrantCategory.EDUCATION_TRAINING: [
        "education", "school", "university", "training", "skills", "learning",
        "teacher", "student", "literacy", "vocational",
    ],
    GrantCategory.TECHNOLOGY_INNOVATION: [
        "technology", "digital", "innovation", "fintech", "broadband",
        "connectivity", "e-government", "digital transformation",
    ],
}

BASE_TAGS = ("world-bank", "international", "development", "multilateral")

TAG_KEYWORDS = {
    "ibrd": ["ibrd", "international bank"],
    "ida": ["ida", "international development association"],
    "ifc": ["ifc", "international finance corporation"],
    "procurement": ["procurement", "contract", "tender", "bidding"],
    "policy-lending": ["policy", "development policy", "budget support"],
    "investment-lending": ["investment", "project financing", "infrastructure"],
}


def _first(item: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return str(value).strip()
    return None


def map_project(item: dict, source: SourceConfiguration) -> Optional[RawGrantData]:
    """Map one projects API entry; entries without a name are dropped."""
    title = _first(item, "title", "project_name")
    if not title:
        return None
    return RawGrantData(
        title=title,
        source_url=source.url,
        description=_first(item, "abstract", "description", "summary"),
        deadline=_first(item, "closing_date", "board_approval_date"),
        funding_amount=_first(item, "total_commitment", "ibrd_commitment", "ida_commitment"),
        eligibility=_first(item, "country", "region"),
        application_url=_first(item, "url", "project_url"),
        funder_name=FUNDER_NAME,
        raw_content={
            "api_data": item,
            "source_type": "api",
            "project_id": item.get("project_id") or item.get("id"),
        },
    )


class WorldBankAdapter(SourceAdapter):
    """
    World Bank projects and procurement opportunities.

    The projects API key is read from ``WORLDBANK_API_KEY`` when set.
    """

    def default_source(self) -> SourceConfiguration:
        return SourceConfiguration(
            id="world-bank",
            name=FUNDER_NAME,
            url=PROCUREMENT_URL,
            type=SourceType.NGO,
            engine=EngineKind.BROWSER,
            selectors=SourceSelectors(
                grant_container=".opportunity-item, .project-item, .procurement-item, .funding-opportunity",
                title=".opportunity-title, .project-title, h3 a, h2 a, .title",
                description=".opportunity-description, .project-description, .summary, .description",
                deadline=".deadline, .closing-date, .due-date, .application-deadline",
                funding_amount=".amount, .funding-amount, .project-cost, .budget, .value",
                eligibility=".eligibility, .requirements, .criteria, .eligible-countries",
                application_url=(
                    '.apply-link, .opportunity-link, a[href*="opportunity"], a[href*="procurement"]'
                ),
                funder_info=".funder, .implementing-agency, .borrower, .client",
            ),
            rate_limit=RateLimitConfig(requests_per_minute=20, delay_between_requests=3.0),
            headers={
                "Accept-Language": "en-US,en;q=0.9,es;q=0.8,fr;q=0.7,ar;q=0.6",
                "Cache-Control": "no-cache",
                "DNT": "1",
            },
        )

    def default_engine_options(self) -> dict[EngineKind, dict[str, Any]]:
        return {
            EngineKind.API: {
                "options": ApiClientOptions(
                    timeout=45.0,
                    pagination=OffsetPagination(page_size=100, max_pages=10),
                ),
                "item_mapper": map_project,
            },
            EngineKind.BROWSER: {"options": BrowserOptions(timeout=45.0)},
            EngineKind.STATIC: {"options": StaticParserOptions(timeout=45.0)},
        }

    def projects_source(self) -> SourceConfiguration:
        api_key = os.getenv("WORLDBANK_API_KEY")
        return replace(
            self.source,
            url=PROJECTS_API_URL,
            engine=EngineKind.API,
            authentication=ApiKeyAuth(api_key) if api_key else None,
        )

    def procurement_source(self) -> SourceConfiguration:
        return replace(self.source, url=PROCUREMENT_URL, selectors=PROCUREMENT_SELECTORS)

    async def harvest(self) -> AdapterReport:
        """
        Run every harvest strategy and merge what succeeded.

        The report is a partial success when some strategies failed but
        others produced records.
        """
        started = time.monotonic()
        report = AdapterReport(source_id=self.source.id)
        records: list[RawGrantData] = []

        records.extend(await self.run_engine(EngineKind.API, report, self.projects_source()))
        records.extend(await self.run_engine(EngineKind.BROWSER, report, self.procurement_source()))

        for index, url in enumerate(PROGRAM_PAGE_URLS):
            if index:
                await asyncio.sleep(self.source.rate_limit.delay_between_requests)
            records.extend(await self.run_engine(EngineKind.BROWSER, report, self.source.with_url(url)))

        report.records = dedupe_records(self.process(records))
        report.duration = time.monotonic() - started
        self.logger.info(
            "harvest_finished",
            records=report.count,
            errors=len(report.errors),
            partial=report.partial,
        )
        return report

    def process(self, records: list[RawGrantData]) -> list[RawGrantData]:
        return [self.annotate(record) for record in records]

    def annotate(self, record: RawGrantData) -> RawGrantData:
        """Language cleanup, USD conversion and World Bank metadata."""
        language = detect_language(record.description or record.title)
        title = clean_multilingual_text(record.title, language) or record.title
        description = clean_multilingual_text(record.description, language) or None
        content = f"{title} {description or ''}"

        extra: dict[str, Any] = {
            "detected_language": language,
            "region_info": extract_regions(record.description, record.eligibility),
            "original_title": record.title,
            "original_description": record.description,
            "source_type": "international",
            "platform": FUNDER_NAME,
            "category": infer_category(
                description or title, CATEGORY_KEYWORDS, GrantCategory.COMMUNITY_DEVELOPMENT
            ).value,
            "tags": extract_tags(content, BASE_TAGS, TAG_KEYWORDS),
            "eligibility_scope": "international",
            "funding_type": detect_funding_type(content),
        }
        conversion = convert_to_usd(record.funding_amount)
        if conversion is not None:
            extra.update(conversion)

        record = merge_raw_content(record, **extra)
        return replace(record, title=title, description=description, funder_name=FUNDER_NAME)

    async def test_connection(self) -> bool:
        """True if the projects API or the procurement page answers."""
        engine = self.get_engine(EngineKind.API)
        if isinstance(engine, ApiClientEngine) and await engine.test_connection(self.projects_source()):
            return True
        try:
            await self.get_engine(EngineKind.STATIC).scrape(self.procurement_source())
        except ScrapingError as e:
            self.logger.warning("connection_test_failed", error=str(e))
            return False
        return True
