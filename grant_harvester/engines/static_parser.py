"""
Static HTML engine.

Fetches a listing page through the HTTP transport and extracts one record
per grant container with scoped CSS selectors.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from bs4 import BeautifulSoup

from grant_harvester.core.errors import (
    ContentTypeError,
    PermanentHTTPError,
    ScrapingError,
    SourceFailedError,
)
from grant_harvester.core.http_client import HttpClient
from grant_harvester.core.models import EngineKind, RawGrantData, SourceConfiguration
from grant_harvester.core.proxy_manager import ProxyManager
from grant_harvester.core.rate_limiter import RateLimiter
from grant_harvester.core.selectors import Selector

from .base import extract_records, register_engine

logger = structlog.get_logger(__name__)

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8"

TEXTUAL_CONTENT_TYPES = (
    "text/",
    "application/xhtml+xml",
    "application/xml",
)


@dataclass
class StaticParserOptions:
    """Static engine settings. Times are in seconds."""
    timeout: float = 30.0
    follow_redirects: bool = True
    user_agent: Optional[str] = None
    max_retries: int = 3
    parser: str = "lxml"


def is_textual(response: httpx.Response) -> bool:
    """True if the response carries markup or other text."""
    content_type = response.headers.get("content-type", "").lower()
    if not content_type:
        return bool(response.text.strip())
    return content_type.startswith(TEXTUAL_CONTENT_TYPES)


@register_engine(EngineKind.STATIC)
class StaticParserEngine:
    """
    Markup fetch plus CSS-selector extraction.

    Usage:
        engine = StaticParserEngine()
        records = await engine.scrape(source)
    """

    def __init__(
        self,
        options: Optional[StaticParserOptions] = None,
        http_client: Optional[HttpClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        proxy_manager: Optional[ProxyManager] = None,
    ):
        """
        Initialize engine.

        Args:
            options: Engine settings
            http_client: Shared, already-open transport (one is created
                         per scrape when omitted)
            rate_limiter: Limiter for transports created by the engine
            proxy_manager: Proxy source for transports created by the engine
        """
        self.options = options or StaticParserOptions()
        self.http_client = http_client
        self.rate_limiter = rate_limiter
        self.proxy_manager = proxy_manager
        self.logger = logger.bind(engine="static")

    def _make_client(self, source: SourceConfiguration) -> HttpClient:
        return HttpClient(
            timeout=self.options.timeout,
            max_retries=self.options.max_retries,
            delay_between_requests=source.rate_limit.delay_between_requests,
            follow_redirects=self.options.follow_redirects,
            headers=source.headers,
            user_agents=[self.options.user_agent] if self.options.user_agent else None,
            proxy_manager=self.proxy_manager,
            rate_limiter=self.rate_limiter,
        )

    async def scrape(self, source: SourceConfiguration) -> list[RawGrantData]:
        """
        Harvest one listing page.

        Returns:
            Records in document order (possibly empty)

        Raises:
            SourceFailedError: The page could not be fetched or was not markup
        """
        self.logger.info("static_scrape_started", source_id=source.id, url=source.url)
        try:
            if self.http_client is not None:
                html = await self.fetch_page(self.http_client, source)
            else:
                async with self._make_client(source) as client:
                    html = await self.fetch_page(client, source)
        except (httpx.HTTPError, ScrapingError) as e:
            self.logger.error("static_fetch_failed", source_id=source.id, error=str(e))
            raise SourceFailedError(source.id, source.url, e) from e

        records = self.parse(html, source)
        self.logger.info("static_scrape_finished", source_id=source.id, records=len(records))
        return records

    async def fetch_page(self, client: HttpClient, source: SourceConfiguration) -> str:
        """
        Fetch the listing markup.

        Raises:
            PermanentHTTPError: Status other than 200
            ContentTypeError: Body is not textual markup
        """
        response = await client.get(
            source.url,
            headers={"Accept": HTML_ACCEPT},
            follow_redirects=self.options.follow_redirects,
        )
        if response.status_code != 200:
            raise PermanentHTTPError(
                response.status_code,
                source.url,
                f"Expected HTTP 200 from {source.url}, got {response.status_code}",
            )
        if not is_textual(response):
            raise ContentTypeError(
                f"Expected HTML from {source.url}, got "
                f"{response.headers.get('content-type', 'empty body')!r}"
            )
        return response.text

    def parse(self, html: str, source: SourceConfiguration) -> list[RawGrantData]:
        """Extract records from already-fetched markup."""
        soup = BeautifulSoup(html, self.options.parser)
        containers = Selector(soup, source.url).css(source.selectors.grant_container).elements
        if not containers:
            self.logger.warning(
                "no_containers_found",
                source_id=source.id,
                selector=source.selectors.grant_container,
            )
            return []
        return extract_records(containers, source, engine="static")
