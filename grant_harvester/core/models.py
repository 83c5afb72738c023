"""
Data models for the harvesting layer.

Source descriptors, tagged authentication/pagination variants, the
RawGrantData output record, and the state records used by the resilience
utilities (proxy health, retry results, circuit breaker state).
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union
from urllib.parse import quote

T = TypeVar("T")

UNKNOWN_FUNDER = "Unknown Funder"


class SourceType(str, Enum):
    """Kind of organisation publishing the listings."""
    GOV = "gov"
    FOUNDATION = "foundation"
    BUSINESS = "business"
    NGO = "ngo"
    OTHER = "other"


class EngineKind(str, Enum):
    """Fetch-and-extract strategy used for a source."""
    STATIC = "static"
    BROWSER = "browser"
    API = "api"
    PDF = "pdf"


class GrantCategory(str, Enum):
    """Fixed category taxonomy used by adapters."""
    HEALTHCARE_PUBLIC_HEALTH = "healthcare_public_health"
    EDUCATION_TRAINING = "education_training"
    ENVIRONMENT_SUSTAINABILITY = "environment_sustainability"
    SOCIAL_SERVICES = "social_services"
    ARTS_CULTURE = "arts_culture"
    TECHNOLOGY_INNOVATION = "technology_innovation"
    RESEARCH_DEVELOPMENT = "research_development"
    COMMUNITY_DEVELOPMENT = "community_development"


@dataclass(frozen=True)
class SourceSelectors:
    """CSS selectors (or JSON keys) locating each field inside a container."""
    grant_container: str = ""
    title: str = ""
    description: str = ""
    deadline: str = ""
    funding_amount: str = ""
    eligibility: str = ""
    application_url: str = ""
    funder_info: str = ""

    def field_selectors(self) -> dict[str, str]:
        """Return field name -> selector for every per-record field."""
        data = asdict(self)
        data.pop("grant_container")
        return data


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-source politeness settings."""
    requests_per_minute: int = 30
    delay_between_requests: float = 1.0  # seconds
    respect_robots_txt: bool = True


# --- Authentication variants -------------------------------------------------

@dataclass(frozen=True)
class BearerAuth:
    token: str


@dataclass(frozen=True)
class BasicAuth:
    username: str
    password: str


@dataclass(frozen=True)
class ApiKeyAuth:
    api_key: str


@dataclass(frozen=True)
class OAuth2Auth:
    """Client-credentials grant against ``token_endpoint``."""
    token_endpoint: str
    client_id: str
    client_secret: str
    scope: Optional[str] = None


AuthConfig = Union[BearerAuth, BasicAuth, ApiKeyAuth, OAuth2Auth]


# --- Pagination variants -----------------------------------------------------

@dataclass(frozen=True)
class OffsetPagination:
    page_size: int = 25
    max_pages: int = 10


@dataclass(frozen=True)
class PagePagination:
    page_size: int = 25
    max_pages: int = 10


@dataclass(frozen=True)
class CursorPagination:
    page_size: int = 25
    max_pages: int = 10


PaginationConfig = Union[OffsetPagination, PagePagination, CursorPagination]


@dataclass(frozen=True)
class SourceConfiguration:
    """
    Immutable per-source descriptor.

    Built once by an adapter (or the YAML loader) and never mutated during
    a harvest. Use ``with_url`` when an engine needs a variant pointing at a
    different page.
    """

    id: str
    url: str
    type: SourceType = SourceType.OTHER
    engine: EngineKind = EngineKind.STATIC
    selectors: SourceSelectors = field(default_factory=SourceSelectors)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    headers: dict[str, str] = field(default_factory=dict)
    authentication: Optional[AuthConfig] = None
    pagination: Optional[PaginationConfig] = None
    name: Optional[str] = None

    def with_url(self, url: str) -> "SourceConfiguration":
        """Copy of this configuration pointing at another URL."""
        return replace(self, url=url)

    def with_engine(self, engine: EngineKind) -> "SourceConfiguration":
        """Copy of this configuration using another engine."""
        return replace(self, engine=engine)


@dataclass
class FundingAmount:
    """Funding amount parsed from free text."""
    min: Optional[float] = None
    max: Optional[float] = None
    currency: str = "$"

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class RawGrantData:
    """
    Canonical output unit of one harvested listing.

    A record without a usable title is invalid; engines drop such items
    instead of inventing a title.
    """

    title: str
    source_url: str
    description: Optional[str] = None
    deadline: Optional[str] = None
    funding_amount: Optional[str] = None
    eligibility: Optional[str] = None
    application_url: Optional[str] = None
    funder_name: str = UNKNOWN_FUNDER
    scraped_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw_content: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.title = (self.title or "").strip()
        if not self.title:
            raise ValueError("RawGrantData requires a non-empty title")
        if not self.funder_name or not self.funder_name.strip():
            self.funder_name = UNKNOWN_FUNDER

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = {}
        for k, v in asdict(self).items():
            if isinstance(v, datetime):
                data[k] = v.isoformat()
            elif v is not None:
                data[k] = v
        return data


# --- Proxy records -----------------------------------------------------------

@dataclass(frozen=True)
class ProxyConfig:
    """A proxy endpoint."""
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None
    protocol: str = "http"  # http, https, socks5

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        """Proxy URL suitable for httpx."""
        auth = ""
        if self.username:
            auth = quote(self.username, safe="")
            if self.password:
                auth += ":" + quote(self.password, safe="")
            auth += "@"
        return f"{self.protocol}://{auth}{self.host}:{self.port}"


@dataclass
class ProxyHealth:
    """Health record kept per proxy."""
    proxy: ProxyConfig
    is_healthy: bool = True
    response_time: Optional[float] = None  # seconds
    error_count: int = 0
    success_count: int = 0
    last_checked: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "proxy": self.proxy.key,
            "is_healthy": self.is_healthy,
            "response_time": self.response_time,
            "error_count": self.error_count,
            "success_count": self.success_count,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
        }


# --- Retry / circuit breaker records ----------------------------------------

@dataclass
class RetryResult(Generic[T]):
    """Final value of a retried operation plus what it took to get there."""
    result: T
    attempt_number: int
    total_time: float  # seconds
    errors: list[BaseException] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        """True when the value was obtained only after failures."""
        return bool(self.errors)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0  # seconds
    monitoring_period: float = 300.0  # seconds


@dataclass
class CircuitRecord:
    """Mutable circuit state for one operation key."""
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    last_failure: Optional[float] = None
    last_success: Optional[float] = None
    trial_in_flight: bool = False
