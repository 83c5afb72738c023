"""
Grants.gov adapter.

Harvests the Grants.gov opportunity search API through the API engine
(offset pagination over ``rows``/``start``) and maps each opportunity
to RawGrantData.
"""

import os
from typing import Any, Optional

from grant_harvester.core.models import (
    ApiKeyAuth,
    EngineKind,
    OffsetPagination,
    PaginationConfig,
    RateLimitConfig,
    RawGrantData,
    SourceConfiguration,
    SourceType,
)
from grant_harvester.engines.api_client import ApiClientOptions

from .base import SourceAdapter

SEARCH_URL = "https://www.grants.gov/grantsws/rest/opportunities/search/"
OPPORTUNITY_URL = "https://www.grants.gov/web/grants/view-opportunity.html?oppId={opp_id}"

RAW_FIELDS = (
    "oppId",
    "oppNumber",
    "agencyCode",
    "cfda",
    "cfdaDescription",
    "openDate",
    "awardCeiling",
    "awardFloor",
    "estimatedTotalProgramFunding",
    "expectedNumberOfAwards",
    "applicantTypes",
    "fundingInstrumentTypes",
    "categoryOfFundingActivity",
    "categoryExplanation",
    "version",
    "lastUpdatedDate",
)


def build_funding_amount(opportunity: dict) -> Optional[str]:
    """
    Human-readable award range plus program totals.

    e.g. "$10000 - $50000 | Total Program: $1000000 | Expected Awards: 20"
    """
    floor = opportunity.get("awardFloor")
    ceiling = opportunity.get("awardCeiling")
    parts = []

    if floor and ceiling:
        parts.append(f"${floor} - ${ceiling}")
    elif ceiling:
        parts.append(f"Up to ${ceiling}")
    elif floor:
        parts.append(f"From ${floor}")

    if opportunity.get("estimatedTotalProgramFunding"):
        parts.append(f"Total Program: ${opportunity['estimatedTotalProgramFunding']}")
    if opportunity.get("expectedNumberOfAwards"):
        parts.append(f"Expected Awards: {opportunity['expectedNumberOfAwards']}")

    return " | ".join(parts) or None


def build_eligibility(opportunity: dict) -> Optional[str]:
    parts = []
    if opportunity.get("eligibilityCriteria"):
        parts.append(opportunity["eligibilityCriteria"])
    if opportunity.get("applicantTypes"):
        parts.append(f"Eligible Applicants: {', '.join(opportunity['applicantTypes'])}")
    if opportunity.get("fundingInstrumentTypes"):
        parts.append(f"Funding Types: {', '.join(opportunity['fundingInstrumentTypes'])}")
    return " | ".join(parts) or None


def build_description(opportunity: dict) -> Optional[str]:
    parts = []
    if opportunity.get("oppDescription"):
        parts.append(opportunity["oppDescription"])
    if opportunity.get("cfdaDescription"):
        parts.append(f"CFDA Program: {opportunity['cfdaDescription']}")
    if opportunity.get("categoryExplanation"):
        parts.append(f"Category: {opportunity['categoryExplanation']}")
    if opportunity.get("cfda"):
        parts.append(f"CFDA Number: {opportunity['cfda']}")
    return "\n\n".join(parts) or None


def map_opportunity(opportunity: dict, source: SourceConfiguration) -> Optional[RawGrantData]:
    """
    Map one ``oppHits`` entry.

    Returns:
        RawGrantData, or None when the opportunity has no title
    """
    title = (opportunity.get("oppTitle") or "").strip()
    if not title:
        return None

    application_url = opportunity.get("grantsGovLink") or OPPORTUNITY_URL.format(opp_id=opportunity.get("oppId", ""))
    return RawGrantData(
        title=title,
        source_url=application_url,
        description=build_description(opportunity),
        deadline=opportunity.get("closeDate") or None,
        funding_amount=build_funding_amount(opportunity),
        eligibility=build_eligibility(opportunity),
        application_url=application_url,
        funder_name=opportunity.get("agencyName") or "",
        raw_content={key: opportunity.get(key) for key in RAW_FIELDS},
    )


def has_more_hits(payload: Any, page_index: int, items: list, pagination: PaginationConfig) -> bool:
    """More pages exist while fewer than ``totalHits`` rows were requested."""
    if not isinstance(payload, dict) or payload.get("totalHits") is None:
        return False
    return (page_index + 1) * pagination.page_size < int(payload["totalHits"])


class GrantsGovAdapter(SourceAdapter):
    """
    Federal grant opportunities from Grants.gov.

    The API key is read from ``GRANTS_GOV_API_KEY`` and sent as the
    ``api_key`` query parameter when set.
    """

    def default_source(self) -> SourceConfiguration:
        api_key = os.getenv("GRANTS_GOV_API_KEY")
        return SourceConfiguration(
            id="grants-gov",
            name="Grants.gov",
            url=SEARCH_URL,
            type=SourceType.GOV,
            engine=EngineKind.API,
            rate_limit=RateLimitConfig(requests_per_minute=30, delay_between_requests=2.0),
            headers={"Accept": "application/json"},
            authentication=ApiKeyAuth(api_key) if api_key else None,
            pagination=OffsetPagination(page_size=1000, max_pages=10),
        )

    def default_engine_options(self) -> dict[EngineKind, dict[str, Any]]:
        return {
            EngineKind.API: {
                "options": ApiClientOptions(
                    items_key="oppHits",
                    limit_param="rows",
                    offset_param="start",
                    api_key_param="api_key",
                    query_params={
                        "format": "json",
                        "oppStatus": "forecasted|posted",
                        "sortBy": "openDate|desc",
                    },
                ),
                "item_mapper": map_opportunity,
                "has_more": has_more_hits,
            },
        }
