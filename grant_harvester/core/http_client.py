"""
Async HTTP transport with identity rotation, proxies, rate limiting and retries.

Built on httpx with:
- Cyclic user-agent rotation and randomized secondary headers
- Proxy assignment from a ProxyManager or a fixed cyclic list
- Minimum delay between requests plus optional sliding-window limiter
- Exponential backoff retry (tenacity) on network errors and 429/502/503/504
"""

import asyncio
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from itertools import cycle
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .errors import PermanentHTTPError, TransientHTTPError
from .models import ProxyConfig
from .proxy_manager import ProxyManager
from .rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)


# User agents for rotation
USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
]

ACCEPT_VALUES = [
    "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
]

ACCEPT_LANGUAGES = [
    "en-US,en;q=0.9",
    "en-US,en;q=0.8",
    "en-GB,en;q=0.9",
    "en-US,en;q=0.9,es;q=0.8",
    "en-US,en;q=0.9,fr;q=0.8",
]

RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    TransientHTTPError,
)


def random_headers() -> dict[str, str]:
    """Plausible secondary headers with some variation per request."""
    headers = {
        "Accept": random.choice(ACCEPT_VALUES),
        "Accept-Language": random.choice(ACCEPT_LANGUAGES),
        "Accept-Encoding": "gzip, deflate",
        "Connection": "keep-alive",
    }
    if random.random() < 0.5:
        headers["DNT"] = "1"
    return headers


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header.

    Args:
        value: Seconds or an HTTP date

    Returns:
        Seconds to wait, or None if the header is absent or invalid
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class HttpClient:
    """
    Async HTTP transport shared by the engines.

    Within one client every request is serialized behind the inter-request
    delay; run several clients for parallelism.

    Usage:
        async with HttpClient(delay_between_requests=1.0) as client:
            response = await client.get("https://example.org/grants")
            html = response.text
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        delay_between_requests: float = 0.0,
        follow_redirects: bool = True,
        headers: Optional[dict[str, str]] = None,
        user_agents: Optional[list[str]] = None,
        proxies: Optional[list[ProxyConfig]] = None,
        proxy_manager: Optional[ProxyManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize HTTP client.

        Args:
            timeout: Request timeout in seconds
            max_retries: Retries after the first attempt
            retry_base_delay: First backoff delay in seconds
            retry_max_delay: Cap on any single backoff delay
            delay_between_requests: Minimum seconds between requests
            follow_redirects: Default redirect policy
            headers: Headers sent with every request
            user_agents: User-agent rotation list
            proxies: Fixed proxies used in cyclic order
            proxy_manager: Health-checked proxy source (takes precedence)
            rate_limiter: Sliding-window limiter consulted per request
            transport: Custom httpx transport (proxies are not applied)
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.delay_between_requests = delay_between_requests
        self.follow_redirects = follow_redirects
        self.headers = dict(headers or {})
        self.user_agents = list(user_agents or USER_AGENTS)
        self.proxy_manager = proxy_manager
        self.rate_limiter = rate_limiter
        self._transport = transport

        self._proxy_cycle = cycle(proxies) if proxies else None
        self._client: Optional[httpx.AsyncClient] = None
        self._proxy_clients: dict[str, httpx.AsyncClient] = {}
        self._user_agent_index = 0
        self._slot_lock = asyncio.Lock()
        self._backoff = wait_exponential_jitter(
            initial=retry_base_delay,
            max=retry_max_delay,
            jitter=retry_base_delay,
        )

        self.request_count = 0
        self.last_request_time: Optional[float] = None

    async def __aenter__(self) -> "HttpClient":
        """Enter async context."""
        self._client = self._make_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context."""
        await self.close()

    async def close(self) -> None:
        clients = list(self._proxy_clients.values())
        if self._client:
            clients.append(self._client)
        for client in clients:
            await client.aclose()
        self._client = None
        self._proxy_clients.clear()

    def _make_client(self, proxy: Optional[ProxyConfig] = None) -> httpx.AsyncClient:
        kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(self.timeout),
            "follow_redirects": self.follow_redirects,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif proxy is not None:
            kwargs["proxy"] = proxy.url
        return httpx.AsyncClient(**kwargs)

    def _client_for(self, proxy: Optional[ProxyConfig]) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context.")
        if proxy is None or self._transport is not None:
            return self._client
        client = self._proxy_clients.get(proxy.key)
        if client is None:
            client = self._make_client(proxy)
            self._proxy_clients[proxy.key] = client
        return client

    def _get_user_agent(self) -> str:
        """Get next user agent in rotation."""
        ua = self.user_agents[self._user_agent_index % len(self.user_agents)]
        self._user_agent_index += 1
        return ua

    def _build_headers(self, extra: Optional[dict[str, str]]) -> dict[str, str]:
        headers = random_headers()
        headers["User-Agent"] = self._get_user_agent()
        headers.update(self.headers)
        if extra:
            headers.update(extra)
        return headers

    async def _next_proxy(self) -> Optional[ProxyConfig]:
        if self.proxy_manager is not None:
            return await self.proxy_manager.get_next_proxy()
        if self._proxy_cycle is not None:
            return next(self._proxy_cycle)
        return None

    async def _wait_for_slot(self) -> None:
        """Wait for the rate limiter and the inter-request delay."""
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        async with self._slot_lock:
            if self.last_request_time is not None and self.delay_between_requests > 0:
                elapsed = time.monotonic() - self.last_request_time
                if elapsed < self.delay_between_requests:
                    await asyncio.sleep(self.delay_between_requests - elapsed)
            self.last_request_time = time.monotonic()
            self.request_count += 1

    async def _do_request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute one HTTP attempt."""
        await self._wait_for_slot()

        headers = self._build_headers(kwargs.pop("headers", None))
        proxy = await self._next_proxy()
        client = self._client_for(proxy)

        logger.debug("http_request", method=method, url=url, proxy=proxy.key if proxy else None)

        started = time.monotonic()
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError:
            if proxy is not None and self.proxy_manager is not None:
                await self.proxy_manager.mark_proxy_as_errored(proxy)
            raise

        if proxy is not None and self.proxy_manager is not None:
            await self.proxy_manager.mark_proxy_as_used(proxy, time.monotonic() - started)

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientHTTPError(
                response.status_code,
                url,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 400:
            raise PermanentHTTPError(response.status_code, url)

        return response

    def _wait(self, retry_state) -> float:
        error = retry_state.outcome.exception()
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return min(retry_after, self.retry_max_delay)
        return self._backoff(retry_state)

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send a request, retrying transient failures.

        Args:
            method: HTTP method
            url: Target URL
            **kwargs: Additional httpx arguments (params, json, data, headers,
                      follow_redirects, timeout)

        Returns:
            httpx.Response with a status below 400

        Raises:
            TransientHTTPError: Retryable status persisted past the retry budget
            PermanentHTTPError: Any other 4xx/5xx status
            httpx.TransportError: Network failure persisted past the retry budget
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
            before_sleep=lambda state: logger.warning(
                "http_retry",
                method=method,
                url=url,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            ),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                # Each attempt gets its own copy; _do_request pops headers
                response = await self._do_request(method, url, **dict(kwargs))
        return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def get_text(self, url: str, **kwargs) -> str:
        """GET request returning text content."""
        response = await self.get(url, **kwargs)
        return response.text

    async def get_json(self, url: str, **kwargs) -> Any:
        """GET request returning decoded JSON."""
        response = await self.get(url, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise PermanentHTTPError(response.status_code, url, f"Malformed JSON from {url}: {e}") from e

    async def get_bytes(self, url: str, **kwargs) -> bytes:
        """GET request returning bytes content."""
        response = await self.get(url, **kwargs)
        return response.content

    @property
    def stats(self) -> dict:
        return {
            "request_count": self.request_count,
            "last_request_time": self.last_request_time,
        }
