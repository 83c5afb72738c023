"""
Ford Foundation adapter.

Static parsing first, the browser engine when that yields nothing, then a
list of alternative program pages. Records are annotated with Ford program
areas, social-justice focus, target communities, geographic scope and
advocacy type.
"""

import time
from dataclasses import replace
from typing import Any

from grant_harvester.core.models import (
    EngineKind,
    GrantCategory,
    RateLimitConfig,
    RawGrantData,
    SourceConfiguration,
    SourceSelectors,
    SourceType,
)
from grant_harvester.engines.browser import BrowserOptions
from grant_harvester.engines.static_parser import StaticParserOptions

from .base import AdapterReport, SourceAdapter, dedupe_records, merge_raw_content
from .enrichment import first_label, infer_category, match_labels

BASE_URL = "https://www.fordfoundation.org"
LISTING_URL = f"{BASE_URL}/work/our-grants/"
FUNDER_NAME = "Ford Foundation"

ALTERNATIVE_URLS = [
    f"{BASE_URL}/work/our-grants/grants-database/",
    f"{BASE_URL}/work/learning/research-reports/",
    f"{BASE_URL}/work/challenging-inequality/",
    f"{BASE_URL}/work/strengthening-democratic-values/",
    f"{BASE_URL}/work/advancing-equitable-development/",
]

CATEGORY_KEYWORDS = {
    GrantCategory.SOCIAL_SERVICES: [
        "social justice", "civil rights", "human rights", "equality", "equity",
        "discrimination", "marginalized", "underserved", "community organizing",
        "advocacy", "social change", "systemic change", "institutional change",
    ],
    GrantCategory.COMMUNITY_DEVELOPMENT: [
        "community", "development", "economic development", "neighborhood",
        "local", "grassroots", "community-based", "community-led", "capacity building",
        "infrastructure", "organizing", "empowerment",
    ],
    GrantCategory.EDUCATION_TRAINING: [
        "education", "learning", "school", "teacher", "student", "literacy",
        "educational", "academic", "university", "college", "scholarship",
        "training", "workforce development", "skill building",
    ],
    GrantCategory.ARTS_CULTURE: [
        "arts", "culture", "cultural", "creative", "artist", "museum",
        "theater", "music", "dance", "literature", "media", "storytelling",
        "narrative", "expression", "creativity",
    ],
    GrantCategory.TECHNOLOGY_INNOVATION: [
        "technology", "digital", "innovation", "tech", "algorithmic",
        "artificial intelligence", "ai", "data", "platform", "online",
        "internet", "cyber", "digital rights", "tech policy",
    ],
    GrantCategory.RESEARCH_DEVELOPMENT: [
        "research", "study", "analysis", "evaluation", "assessment",
        "investigation", "data collection", "policy research", "think tank",
        "academic research", "evidence", "documentation",
    ],
    GrantCategory.ENVIRONMENT_SUSTAINABILITY: [
        "environment", "climate", "sustainability", "green", "renewable",
        "conservation", "environmental justice", "clean energy", "carbon",
        "ecosystem", "biodiversity", "pollution",
    ],
}

PROGRAM_AREAS = {
    "BUILD Program": ["build", "infrastructure", "capacity", "organizational development", "sustainability"],
    "Civic Engagement and Government": ["civic", "voting", "democracy", "government", "accountability", "participation"],
    "Economic Justice": ["economic", "worker", "labor", "wage", "employment", "economic opportunity"],
    "Gender, Racial and Ethnic Justice": ["gender", "racial", "ethnic", "women", "intersectional", "justice"],
    "Technology and Society": ["technology", "digital", "algorithmic", "tech policy", "digital rights"],
    "Arts and Culture": ["arts", "culture", "creative", "storytelling", "narrative", "media"],
    "Higher Education": ["university", "college", "higher education", "academic", "scholarship"],
    "International Programs": ["international", "global", "worldwide", "cross-border", "transnational"],
}

SOCIAL_JUSTICE_FOCUS = {
    "racial justice": "Racial Justice",
    "gender justice": "Gender Justice",
    "economic justice": "Economic Justice",
    "environmental justice": "Environmental Justice",
    "criminal justice": "Criminal Justice",
    "immigration": "Immigration Justice",
    "lgbtq": "LGBTQ+ Rights",
    "disability rights": "Disability Rights",
    "voting rights": "Voting Rights",
    "civil rights": "Civil Rights",
    "human rights": "Human Rights",
    "reproductive rights": "Reproductive Rights",
}

TARGET_COMMUNITIES = {
    "people of color": "People of Color",
    "communities of color": "Communities of Color",
    "black": "Black Communities",
    "african american": "African American Communities",
    "latino": "Latino Communities",
    "hispanic": "Hispanic Communities",
    "indigenous": "Indigenous Communities",
    "native american": "Native American Communities",
    "asian american": "Asian American Communities",
    "women": "Women",
    "girls": "Girls",
    "lgbtq": "LGBTQ+ Communities",
    "transgender": "Transgender Communities",
    "disability": "People with Disabilities",
    "immigrants": "Immigrant Communities",
    "refugees": "Refugee Communities",
    "youth": "Youth",
    "elderly": "Elderly",
    "rural": "Rural Communities",
    "urban": "Urban Communities",
    "low-income": "Low-Income Communities",
    "working class": "Working Class Communities",
}

GEOGRAPHIC_SCOPE = {
    "united states": "United States",
    "us": "United States",
    "america": "United States",
    "global": "Global",
    "international": "International",
    "worldwide": "Global",
    "latin america": "Latin America",
    "south america": "South America",
    "africa": "Africa",
    "asia": "Asia",
    "europe": "Europe",
    "middle east": "Middle East",
    "caribbean": "Caribbean",
    "mexico": "Mexico",
    "brazil": "Brazil",
    "india": "India",
    "china": "China",
}

ADVOCACY_TYPES = {
    "policy": "Policy Advocacy",
    "legislative": "Legislative Advocacy",
    "litigation": "Legal Advocacy",
    "grassroots": "Grassroots Organizing",
    "community organizing": "Community Organizing",
    "coalition building": "Coalition Building",
    "research": "Research and Analysis",
    "public education": "Public Education",
    "media": "Media Advocacy",
    "storytelling": "Narrative Change",
    "capacity building": "Capacity Building",
    "leadership development": "Leadership Development",
}


class FordFoundationAdapter(SourceAdapter):
    """Ford Foundation grant listings."""

    def default_source(self) -> SourceConfiguration:
        return SourceConfiguration(
            id="ford-foundation",
            name=FUNDER_NAME,
            url=LISTING_URL,
            type=SourceType.FOUNDATION,
            engine=EngineKind.STATIC,
            selectors=SourceSelectors(
                grant_container=(
                    '.grant-item, .grant-card, .funding-opportunity, [data-testid="grant"], .program-item'
                ),
                title=".grant-title, .program-title, h3, h4, .card-title, .opportunity-title",
                description=(
                    ".grant-description, .program-description, .card-description, .opportunity-description, p"
                ),
                deadline=".deadline, .application-deadline, .due-date, .closing-date, .apply-by",
                funding_amount=".amount, .funding-amount, .grant-amount, .award-amount",
                eligibility=".eligibility, .eligibility-criteria, .requirements, .who-can-apply",
                application_url=(
                    '.apply-link, .application-link, a[href*="apply"], a[href*="application"], .cta-link'
                ),
                funder_info=".funder-info, .organization-info, .foundation-info, .contact-info",
            ),
            rate_limit=RateLimitConfig(requests_per_minute=15, delay_between_requests=4.0),
            headers={
                "Accept-Language": "en-US,en;q=0.5",
                "DNT": "1",
                "Upgrade-Insecure-Requests": "1",
            },
        )

    def default_engine_options(self) -> dict[EngineKind, dict[str, Any]]:
        return {
            EngineKind.STATIC: {"options": StaticParserOptions(timeout=30.0)},
            EngineKind.BROWSER: {"options": BrowserOptions(timeout=45.0)},
        }

    async def _static_then_browser(self, source: SourceConfiguration, report: AdapterReport) -> list[RawGrantData]:
        records = await self.run_engine(EngineKind.STATIC, report, source)
        if records:
            return records
        self.logger.info("static_empty_trying_browser", url=source.url)
        return await self.run_engine(EngineKind.BROWSER, report, source)

    async def harvest(self) -> AdapterReport:
        """
        Listing page first, then alternative pages until one yields records.
        """
        started = time.monotonic()
        report = AdapterReport(source_id=self.source.id)

        records = await self._static_then_browser(self.source, report)
        if not records:
            for url in ALTERNATIVE_URLS:
                self.logger.info("trying_alternative_url", url=url)
                records = await self._static_then_browser(self.source.with_url(url), report)
                if records:
                    break

        if not records:
            self.logger.warning("no_records_found", attempts=len(ALTERNATIVE_URLS) + 1)

        report.records = dedupe_records(self.process(records))
        report.duration = time.monotonic() - started
        self.logger.info("harvest_finished", records=report.count, errors=len(report.errors))
        return report

    def process(self, records: list[RawGrantData]) -> list[RawGrantData]:
        return [self.annotate(record) for record in records]

    def annotate(self, record: RawGrantData) -> RawGrantData:
        """Add Ford program metadata and normalize funder and application URL."""
        focus_text = record.description or record.title
        context_text = record.description or record.eligibility or ""

        application_url = record.application_url
        if application_url and not application_url.startswith("http"):
            application_url = f"{BASE_URL}{application_url}"
        if not application_url:
            application_url = LISTING_URL

        record = merge_raw_content(
            record,
            inferred_category=infer_category(
                focus_text, CATEGORY_KEYWORDS, GrantCategory.SOCIAL_SERVICES, count_occurrences=True
            ).value,
            ford_program=first_label(focus_text, PROGRAM_AREAS, "General Program"),
            social_justice_focus=match_labels(context_text, SOCIAL_JUSTICE_FOCUS),
            target_communities=match_labels(context_text, TARGET_COMMUNITIES),
            geographic_scope=match_labels(context_text, GEOGRAPHIC_SCOPE),
            advocacy_type=match_labels(record.description, ADVOCACY_TYPES),
        )
        return replace(record, funder_name=FUNDER_NAME, application_url=application_url)
