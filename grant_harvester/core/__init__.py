"""
Core layer - shared utilities for every engine and adapter.

Components:
- models: SourceConfiguration, RawGrantData and resilience state records
- errors: Error taxonomy, classification and resolution
- http_client: Rate-limited, retrying, identity-rotating HTTP transport
- rate_limiter: Sliding-window limiter and keyed registry
- proxy_manager: Health-checked proxy rotation and named pools
- retry_manager: Retry, fallback chains and circuit breakers
- stealth: Headless browser anti-detection
- selectors: Scoped CSS extraction and URL resolution
- text_cleaner: Text normalization and field extraction
"""

from .errors import (
    AllFallbacksFailedError,
    AuthenticationError,
    CircuitOpenError,
    ContentTypeError,
    PermanentHTTPError,
    RateLimitExceededError,
    ScrapingError,
    SourceFailedError,
    TransientHTTPError,
    TransientNetworkError,
    classify_error,
    resolve_error,
)
from .http_client import HttpClient
from .models import (
    ApiKeyAuth,
    BasicAuth,
    BearerAuth,
    CircuitBreakerConfig,
    CircuitState,
    CursorPagination,
    EngineKind,
    FundingAmount,
    OAuth2Auth,
    OffsetPagination,
    PagePagination,
    ProxyConfig,
    RateLimitConfig,
    RawGrantData,
    RetryResult,
    SourceConfiguration,
    SourceSelectors,
    SourceType,
)
from .proxy_manager import ProxyManager, ProxyPool, RotationStrategy
from .rate_limiter import GlobalRateLimiter, RateLimiter
from .retry_manager import RetryConditions, RetryManager, RetryOptions
from .selectors import Selector, resolve_url
from .text_cleaner import (
    calculate_quality_score,
    clean_text,
    extract_deadline,
    extract_funding_amount,
    extract_location_eligibility,
    normalize_key,
)

__all__ = [
    "AllFallbacksFailedError",
    "AuthenticationError",
    "CircuitOpenError",
    "ContentTypeError",
    "PermanentHTTPError",
    "RateLimitExceededError",
    "ScrapingError",
    "SourceFailedError",
    "TransientHTTPError",
    "TransientNetworkError",
    "classify_error",
    "resolve_error",
    "HttpClient",
    "ApiKeyAuth",
    "BasicAuth",
    "BearerAuth",
    "CircuitBreakerConfig",
    "CircuitState",
    "CursorPagination",
    "EngineKind",
    "FundingAmount",
    "OAuth2Auth",
    "OffsetPagination",
    "PagePagination",
    "ProxyConfig",
    "RateLimitConfig",
    "RawGrantData",
    "RetryResult",
    "SourceConfiguration",
    "SourceSelectors",
    "SourceType",
    "ProxyManager",
    "ProxyPool",
    "RotationStrategy",
    "GlobalRateLimiter",
    "RateLimiter",
    "RetryConditions",
    "RetryManager",
    "RetryOptions",
    "Selector",
    "resolve_url",
    "calculate_quality_score",
    "clean_text",
    "extract_deadline",
    "extract_funding_amount",
    "extract_location_eligibility",
    "normalize_key",
]
