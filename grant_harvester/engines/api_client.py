"""
Structured-data engine for REST endpoints.

Resolves the source's authentication once, walks the configured
pagination, and maps each item to RawGrantData through field-name
aliases so that differently shaped APIs can share one engine.
"""

import base64
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
import structlog

from grant_harvester.core.errors import AuthenticationError, ScrapingError, SourceFailedError
from grant_harvester.core.http_client import HttpClient
from grant_harvester.core.models import (
    ApiKeyAuth,
    AuthConfig,
    BasicAuth,
    BearerAuth,
    CursorPagination,
    EngineKind,
    OAuth2Auth,
    OffsetPagination,
    PagePagination,
    PaginationConfig,
    RawGrantData,
    SourceConfiguration,
)
from grant_harvester.core.proxy_manager import ProxyManager
from grant_harvester.core.rate_limiter import RateLimiter

from .base import register_engine

logger = structlog.get_logger(__name__)

# First alias present wins
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("title", "name", "oppTitle", "grantTitle"),
    "description": ("description", "summary", "oppDescription", "abstract"),
    "deadline": ("deadline", "closeDate", "dueDate", "applicationDeadline"),
    "funding_amount": ("amount", "funding", "awardAmount", "budget"),
    "eligibility": ("eligibility", "eligibilityCriteria", "requirements"),
    "application_url": ("url", "link", "applicationUrl", "applyUrl"),
    "funder_name": ("funder", "organization", "agency", "sponsor"),
}

ITEM_KEYS = ("data", "items", "results")
CURSOR_KEYS = ("nextCursor", "next_cursor", "cursor")

ACCEPT_HEADERS = {
    "json": "application/json",
    "xml": "application/xml, text/xml",
    "csv": "text/csv",
}

MAX_CONSECUTIVE_ERRORS = 3

ItemMapper = Callable[[dict, SourceConfiguration], Optional[RawGrantData]]
HasMore = Callable[[Any, int, list, PaginationConfig], bool]


@dataclass
class ApiClientOptions:
    """API engine settings. Times are in seconds."""
    timeout: float = 30.0
    max_retries: int = 3
    response_format: str = "json"
    pagination: PaginationConfig = field(default_factory=OffsetPagination)
    items_key: Optional[str] = None
    query_params: dict[str, str] = field(default_factory=dict)
    limit_param: str = "limit"
    offset_param: str = "offset"
    page_param: str = "page"
    per_page_param: str = "per_page"
    cursor_param: str = "cursor"
    api_key_param: Optional[str] = None  # send API keys as a query parameter instead of a header
    max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS


def first_field(item: dict, names: tuple[str, ...]) -> Optional[str]:
    """Value of the first present, non-null key, as a string."""
    for name in names:
        value = item.get(name)
        if value is not None:
            return str(value).strip()
    return None


def next_cursor(payload: Any) -> Optional[str]:
    """Opaque cursor for the following page, if the response carries one."""
    if not isinstance(payload, dict):
        return None
    for key in CURSOR_KEYS:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def default_has_more(payload: Any, page_index: int, items: list, pagination: PaginationConfig) -> bool:
    """
    Decide whether another page should be requested.

    Order: explicit hasMore/has_more flag, then totalPages, then the
    full-page heuristic (a full page suggests more data). The heuristic
    can over- or under-fetch; pass ``has_more=`` to the engine to replace it.
    """
    if isinstance(payload, dict):
        for key in ("hasMore", "has_more"):
            if payload.get(key) is not None:
                return bool(payload[key])
        if payload.get("totalPages") is not None:
            return page_index + 1 < int(payload["totalPages"])
    return len(items) == pagination.page_size


@register_engine(EngineKind.API)
class ApiClientEngine:
    """
    Authenticated, paginated JSON fetch.

    Usage:
        engine = ApiClientEngine(ApiClientOptions(pagination=PagePagination(page_size=50)))
        records = await engine.scrape(source)
    """

    def __init__(
        self,
        options: Optional[ApiClientOptions] = None,
        http_client: Optional[HttpClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        proxy_manager: Optional[ProxyManager] = None,
        item_mapper: Optional[ItemMapper] = None,
        has_more: Optional[HasMore] = None,
    ):
        """
        Initialize engine.

        Args:
            options: Engine settings
            http_client: Shared, already-open transport
            rate_limiter: Limiter for transports created by the engine
            proxy_manager: Proxy source for transports created by the engine
            item_mapper: Replaces the alias-based item mapping
            has_more: Replaces the default more-pages decision
        """
        self.options = options or ApiClientOptions()
        self.http_client = http_client
        self.rate_limiter = rate_limiter
        self.proxy_manager = proxy_manager
        self.item_mapper = item_mapper or self.map_item
        self.has_more = has_more or default_has_more
        self.logger = logger.bind(engine="api")

    def _make_client(self, source: SourceConfiguration) -> HttpClient:
        return HttpClient(
            timeout=self.options.timeout,
            max_retries=self.options.max_retries,
            delay_between_requests=source.rate_limit.delay_between_requests,
            headers=source.headers,
            proxy_manager=self.proxy_manager,
            rate_limiter=self.rate_limiter,
        )

    def pagination_for(self, source: SourceConfiguration) -> PaginationConfig:
        return source.pagination or self.options.pagination

    async def scrape(self, source: SourceConfiguration) -> list[RawGrantData]:
        """
        Harvest every page of an API source.

        Raises:
            AuthenticationError: Credentials could not be resolved
            SourceFailedError: No page could be fetched
        """
        self.logger.info("api_scrape_started", source_id=source.id, url=source.url)
        if self.http_client is not None:
            items = await self._harvest(self.http_client, source)
        else:
            async with self._make_client(source) as client:
                items = await self._harvest(client, source)

        records = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                self.logger.warning("item_skipped_not_object", source_id=source.id, index=index)
                continue
            record = self.item_mapper(item, source)
            if record is None:
                self.logger.warning("record_dropped_missing_title", source_id=source.id, index=index)
                continue
            records.append(record)

        self.logger.info("api_scrape_finished", source_id=source.id, items=len(items), records=len(records))
        return records

    async def _harvest(self, client: HttpClient, source: SourceConfiguration) -> list:
        credential = await self.resolve_auth(client, source.authentication)
        return await self.fetch_all(client, source, credential)

    # --- Authentication ---------------------------------------------------

    async def resolve_auth(self, client: HttpClient, auth: Optional[AuthConfig]) -> Optional[str]:
        """
        Turn an AuthConfig into a credential value.

        Returns:
            Authorization header value (or the raw API key), None without auth

        Raises:
            AuthenticationError: OAuth2 exchange failed or the variant is unknown
        """
        if auth is None:
            return None
        if isinstance(auth, BearerAuth):
            return f"Bearer {auth.token}"
        if isinstance(auth, BasicAuth):
            encoded = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
            return f"Basic {encoded}"
        if isinstance(auth, ApiKeyAuth):
            return auth.api_key
        if isinstance(auth, OAuth2Auth):
            return await self._oauth2_token(client, auth)
        raise AuthenticationError(f"Unsupported authentication type: {type(auth).__name__}")

    async def _oauth2_token(self, client: HttpClient, auth: OAuth2Auth) -> str:
        if not auth.token_endpoint or not auth.client_id or not auth.client_secret:
            raise AuthenticationError("OAuth2 authentication failed: missing OAuth2 configuration")

        form = {
            "grant_type": "client_credentials",
            "client_id": auth.client_id,
            "client_secret": auth.client_secret,
        }
        if auth.scope:
            form["scope"] = auth.scope

        try:
            response = await client.post(
                auth.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
            token = response.json().get("access_token")
        except (httpx.HTTPError, ScrapingError, ValueError, AttributeError) as e:
            raise AuthenticationError(f"OAuth2 authentication failed: {e}") from e

        if not token:
            raise AuthenticationError("OAuth2 authentication failed: no access_token in response")
        self.logger.debug("oauth2_token_obtained", endpoint=auth.token_endpoint)
        return f"Bearer {token}"

    # --- Pagination -------------------------------------------------------

    def build_params(
        self,
        pagination: PaginationConfig,
        page_index: int,
        cursor: Optional[str] = None,
    ) -> dict[str, str]:
        """
        Query parameters for one page.

        Args:
            pagination: Pagination variant
            page_index: 0-based page counter
            cursor: Cursor taken from the previous response
        """
        opts = self.options
        if isinstance(pagination, OffsetPagination):
            return {
                opts.limit_param: str(pagination.page_size),
                opts.offset_param: str(page_index * pagination.page_size),
            }
        if isinstance(pagination, PagePagination):
            return {
                opts.page_param: str(page_index + 1),
                opts.per_page_param: str(pagination.page_size),
            }
        if isinstance(pagination, CursorPagination):
            params = {opts.limit_param: str(pagination.page_size)}
            if cursor:
                params[opts.cursor_param] = cursor
            return params
        raise ValueError(f"Unsupported pagination type: {type(pagination).__name__}")

    def extract_items(self, payload: Any) -> list:
        """Item list of one page."""
        if isinstance(payload, list):
            return payload
        if not isinstance(payload, dict):
            return []
        if self.options.items_key:
            items = payload.get(self.options.items_key)
            return items if isinstance(items, list) else []
        for key in ITEM_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
        return []

    async def fetch_page(
        self,
        client: HttpClient,
        source: SourceConfiguration,
        params: dict[str, str],
        credential: Optional[str],
    ) -> Any:
        headers = {"Accept": ACCEPT_HEADERS.get(self.options.response_format, "application/json")}
        query = dict(self.options.query_params)
        query.update(params)

        if credential:
            if isinstance(source.authentication, ApiKeyAuth) and self.options.api_key_param:
                query[self.options.api_key_param] = credential
            else:
                headers["Authorization"] = credential

        return await client.get_json(source.url, params=query, headers=headers)

    async def fetch_all(
        self,
        client: HttpClient,
        source: SourceConfiguration,
        credential: Optional[str] = None,
    ) -> list:
        """
        Fetch pages in order until the data runs out or max_pages is hit.

        A failure before any page succeeded is raised at once. After that,
        up to ``max_consecutive_errors`` failures in a row are tolerated
        before stopping with what was collected.
        """
        pagination = self.pagination_for(source)
        collected: list = []
        succeeded = 0
        consecutive_errors = 0
        cursor = None
        page_index = 0

        while page_index < pagination.max_pages:
            params = self.build_params(pagination, page_index, cursor)
            try:
                payload = await self.fetch_page(client, source, params, credential)
            except (httpx.HTTPError, ScrapingError) as e:
                if succeeded == 0:
                    self.logger.error("api_first_page_failed", source_id=source.id, error=str(e))
                    raise SourceFailedError(source.id, source.url, e) from e

                consecutive_errors += 1
                page_index += 1
                self.logger.warning(
                    "api_page_failed",
                    source_id=source.id,
                    page=page_index,
                    consecutive_errors=consecutive_errors,
                    error=str(e),
                )
                if consecutive_errors >= self.options.max_consecutive_errors:
                    break
                continue

            succeeded += 1
            consecutive_errors = 0
            items = self.extract_items(payload)
            if not items:
                break
            collected.extend(items)
            self.logger.debug("api_page_fetched", source_id=source.id, page=page_index + 1, items=len(items))

            more = self.has_more(payload, page_index, items, pagination)
            page_index += 1
            if isinstance(pagination, CursorPagination):
                cursor = next_cursor(payload)
                if not cursor:
                    break
            if not more:
                break

        return collected

    # --- Mapping ----------------------------------------------------------

    def map_item(self, item: dict, source: SourceConfiguration) -> Optional[RawGrantData]:
        """Map one API item through the field aliases."""
        fields = {name: first_field(item, aliases) for name, aliases in FIELD_ALIASES.items()}
        if not fields["title"]:
            return None
        return RawGrantData(
            title=fields["title"],
            source_url=source.url,
            description=fields["description"] or None,
            deadline=fields["deadline"] or None,
            funding_amount=fields["funding_amount"] or None,
            eligibility=fields["eligibility"] or None,
            application_url=fields["application_url"] or None,
            funder_name=fields["funder_name"] or "",
            raw_content=item,
        )

    async def test_connection(self, source: SourceConfiguration) -> bool:
        """Check that the endpoint answers a minimal authenticated request."""
        async with self._make_client(source) as client:
            try:
                credential = await self.resolve_auth(client, source.authentication)
                await self.fetch_page(client, source, {self.options.limit_param: "1"}, credential)
            except (httpx.HTTPError, ScrapingError) as e:
                self.logger.warning("api_connection_test_failed", source_id=source.id, error=str(e))
                return False
        return True
