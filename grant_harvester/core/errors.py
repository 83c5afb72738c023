"""
Error taxonomy for the harvesting layer.

Transient kinds are retried by the transport and the retry manager;
permanent and authentication failures surface immediately. Also provides
error classification and a resolution policy for per-source failures.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import httpx


class ScrapingError(Exception):
    """Base class for all harvesting errors."""


class TransientNetworkError(ScrapingError):
    """Connection reset, DNS failure or timeout."""


class TransientHTTPError(ScrapingError):
    """Retryable HTTP status (429, 502, 503, 504)."""

    def __init__(self, status_code: int, url: str, retry_after: Optional[float] = None):
        self.status_code = status_code
        self.url = url
        self.retry_after = retry_after
        super().__init__(f"HTTP {status_code} from {url}")


class PermanentHTTPError(ScrapingError):
    """Non-retryable HTTP status or malformed response."""

    def __init__(self, status_code: int, url: str, message: str = ""):
        self.status_code = status_code
        self.url = url
        super().__init__(message or f"HTTP {status_code} from {url}")


class ContentTypeError(ScrapingError):
    """Response was not the kind of content the engine expected."""


class AuthenticationError(ScrapingError):
    """Credential resolution or token exchange failed."""


class RateLimitExceededError(ScrapingError):
    """Rate limiter gave up waiting for admission."""


class CircuitOpenError(ScrapingError):
    """Circuit breaker rejected the call without running it."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Circuit breaker is open for {key!r}")


class AllFallbacksFailedError(ScrapingError):
    """Every operation in a fallback chain failed."""

    def __init__(self, errors: Sequence[BaseException]):
        self.errors = list(errors)
        summary = ", ".join(str(e) for e in self.errors) or "no operations provided"
        super().__init__(f"All fallback operations failed: {summary}")


class SourceFailedError(ScrapingError):
    """A whole source could not be harvested."""

    def __init__(self, source_id: str, url: str, cause: Optional[BaseException] = None):
        self.source_id = source_id
        self.url = url
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Source {source_id} ({url}) failed{detail}")


# --- Classification ----------------------------------------------------------

class ErrorType(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    CAPTCHA = "captcha"
    PARSING = "parsing"
    PROXY = "proxy"
    CIRCUIT_OPEN = "circuit_open"
    HTTP = "http"
    UNKNOWN = "unknown"


class ResolutionAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    MANUAL_REVIEW = "manual_review"
    DISABLE_SOURCE = "disable_source"


@dataclass
class ErrorResolution:
    """What the caller should do about a failure."""
    action: ResolutionAction
    message: str
    delay: Optional[float] = None  # seconds


def classify_error(error: BaseException) -> ErrorType:
    """
    Map an exception to an error type.

    Typed exceptions are classified by class; anything else falls back to
    keywords in the message.
    """
    if isinstance(error, SourceFailedError) and error.cause is not None:
        return classify_error(error.cause)
    if isinstance(error, CircuitOpenError):
        return ErrorType.CIRCUIT_OPEN
    if isinstance(error, AuthenticationError):
        return ErrorType.AUTHENTICATION
    if isinstance(error, RateLimitExceededError):
        return ErrorType.RATE_LIMIT
    if isinstance(error, TransientHTTPError):
        return ErrorType.RATE_LIMIT if error.status_code == 429 else ErrorType.NETWORK
    if isinstance(error, PermanentHTTPError):
        if error.status_code in (401, 403):
            return ErrorType.AUTHENTICATION
        return ErrorType.HTTP
    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(error, httpx.ProxyError):
        return ErrorType.PROXY
    if isinstance(error, (TransientNetworkError, httpx.NetworkError)):
        return ErrorType.NETWORK

    message = str(error).lower()
    if "timeout" in message or "timed out" in message:
        return ErrorType.TIMEOUT
    if "rate limit" in message or "too many requests" in message:
        return ErrorType.RATE_LIMIT
    if "captcha" in message or "bot detection" in message:
        return ErrorType.CAPTCHA
    if "proxy" in message or "tunnel" in message:
        return ErrorType.PROXY
    if "unauthorized" in message or "forbidden" in message:
        return ErrorType.AUTHENTICATION
    if "parse" in message or "selector" in message:
        return ErrorType.PARSING
    if "connection" in message or "network" in message:
        return ErrorType.NETWORK
    return ErrorType.UNKNOWN


def resolve_error(
    error: BaseException,
    attempt_number: int = 1,
    max_attempts: int = 3,
) -> ErrorResolution:
    """
    Decide how to react to a failed harvest.

    Args:
        error: The failure
        attempt_number: 1-based attempt that produced the failure
        max_attempts: Attempts allowed before giving up on retryable kinds

    Returns:
        ErrorResolution with the recommended action
    """
    if isinstance(error, SourceFailedError) and error.cause is not None:
        error = error.cause
    error_type = classify_error(error)
    exhausted = attempt_number >= max_attempts

    if error_type == ErrorType.RATE_LIMIT:
        retry_after = getattr(error, "retry_after", None)
        return ErrorResolution(
            action=ResolutionAction.RETRY,
            delay=retry_after or 60.0,
            message="Rate limit detected, retry with extended delay",
        )
    if error_type in (ErrorType.NETWORK, ErrorType.TIMEOUT):
        if exhausted:
            return ErrorResolution(
                action=ResolutionAction.SKIP,
                message="Network failures persisted, skipping this run",
            )
        return ErrorResolution(
            action=ResolutionAction.RETRY,
            delay=min(2.0 ** attempt_number, 300.0),
            message="Transient network failure, retry with backoff",
        )
    if error_type == ErrorType.AUTHENTICATION:
        return ErrorResolution(
            action=ResolutionAction.MANUAL_REVIEW,
            message="Authentication failed, credentials need review",
        )
    if error_type == ErrorType.CAPTCHA:
        return ErrorResolution(
            action=ResolutionAction.MANUAL_REVIEW,
            message="Anti-bot challenge blocked the harvest",
        )
    if error_type == ErrorType.PARSING:
        if exhausted:
            return ErrorResolution(
                action=ResolutionAction.MANUAL_REVIEW,
                message="Extraction keeps failing, page structure may have changed",
            )
        return ErrorResolution(
            action=ResolutionAction.RETRY,
            delay=5.0,
            message="Extraction failed, retry once more",
        )
    if error_type == ErrorType.PROXY:
        return ErrorResolution(
            action=ResolutionAction.RETRY,
            delay=2.0,
            message="Proxy failure, retry through another proxy",
        )
    if error_type == ErrorType.CIRCUIT_OPEN:
        return ErrorResolution(
            action=ResolutionAction.SKIP,
            message="Circuit open, source is cooling down",
        )
    if error_type == ErrorType.HTTP and getattr(error, "status_code", None) in (404, 410):
        return ErrorResolution(
            action=ResolutionAction.DISABLE_SOURCE,
            message="Source URL no longer exists",
        )
    return ErrorResolution(action=ResolutionAction.SKIP, message=str(error) or "Unknown error")
