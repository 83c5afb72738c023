"""
Engine contract and shared container extraction.

Every engine turns one SourceConfiguration into a list of RawGrantData.
Engines are plain classes satisfying the ScrapingEngine protocol; adapters
pick one at construction time through ``create_engine``.
"""

from typing import Any, Callable, Iterable, Optional, Protocol, runtime_checkable

import structlog
from bs4 import Tag

from grant_harvester.core.models import EngineKind, RawGrantData, SourceConfiguration, SourceSelectors
from grant_harvester.core.selectors import Selector

logger = structlog.get_logger(__name__)

# Maximum length of cleaned field text
FIELD_MAX_LENGTH = 5000


@runtime_checkable
class ScrapingEngine(Protocol):
    """Fetch and extract raw candidate records from a source."""

    async def scrape(self, source: SourceConfiguration) -> list[RawGrantData]:
        ...


_ENGINES: dict[EngineKind, Callable[..., ScrapingEngine]] = {}


def register_engine(kind: EngineKind) -> Callable:
    """Class decorator registering an engine factory for kind."""
    def decorator(cls):
        _ENGINES[EngineKind(kind)] = cls
        return cls
    return decorator


def create_engine(kind: EngineKind, **options: Any) -> ScrapingEngine:
    """
    Build the engine registered for kind.

    Args:
        kind: Engine kind (usually ``source.engine``)
        **options: Engine constructor arguments

    Raises:
        ValueError: No engine registered for kind
    """
    # Importing the package registers every engine
    import grant_harvester.engines  # noqa: F401

    try:
        factory = _ENGINES[EngineKind(kind)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown engine: {kind}") from None
    return factory(**options)


def extract_fields(container: Tag, selectors: SourceSelectors, base_url: str) -> dict[str, Optional[str]]:
    """
    Extract every configured field relative to one container.

    Missing, empty or invalid selectors give None for that field.
    """
    sel = Selector(container, base_url)
    return {
        "title": sel.text(selectors.title, max_length=FIELD_MAX_LENGTH),
        "description": sel.text(selectors.description, max_length=FIELD_MAX_LENGTH),
        "deadline": sel.text(selectors.deadline, max_length=FIELD_MAX_LENGTH),
        "funding_amount": sel.text(selectors.funding_amount, max_length=FIELD_MAX_LENGTH),
        "eligibility": sel.text(selectors.eligibility, max_length=FIELD_MAX_LENGTH),
        "application_url": sel.link(selectors.application_url),
        "funder_name": sel.text(selectors.funder_info, max_length=FIELD_MAX_LENGTH),
    }


def build_record(
    fields: dict[str, Optional[str]],
    source_url: str,
    raw_content: Optional[dict[str, Any]] = None,
) -> Optional[RawGrantData]:
    """
    Build a RawGrantData from extracted fields.

    Returns:
        The record, or None when there is no usable title
    """
    title = (fields.get("title") or "").strip()
    if not title:
        return None

    return RawGrantData(
        title=title,
        source_url=source_url,
        description=fields.get("description") or None,
        deadline=fields.get("deadline") or None,
        funding_amount=fields.get("funding_amount") or None,
        eligibility=fields.get("eligibility") or None,
        application_url=fields.get("application_url") or None,
        funder_name=fields.get("funder_name") or "",
        raw_content=raw_content or {},
    )


def extract_records(
    containers: Iterable[Tag],
    source: SourceConfiguration,
    engine: str,
) -> list[RawGrantData]:
    """
    Turn grant containers into records, in document order.

    A container that fails to parse is logged and skipped; a container
    without a title is dropped with a warning.
    """
    log = logger.bind(engine=engine, source_id=source.id)
    records = []

    for index, container in enumerate(containers):
        try:
            fields = extract_fields(container, source.selectors, source.url)
            record = build_record(
                fields,
                source.url,
                raw_content={
                    "html": str(container),
                    "text": container.get_text(" ", strip=True),
                    "engine": engine,
                },
            )
        except Exception as e:
            log.error("extraction_failed", index=index, error=str(e))
            continue

        if record is None:
            log.warning("record_dropped_missing_title", index=index)
            continue
        records.append(record)

    return records
