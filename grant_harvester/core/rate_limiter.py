"""
Sliding-window rate limiting.

A RateLimiter admits a request when the trailing window holds fewer
requests than both the burst limit and the per-minute limit; otherwise
the caller sleeps until the oldest request leaves the window and tries
again. GlobalRateLimiter keeps one limiter per key (usually a source id).
"""

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from .errors import RateLimitExceededError

logger = structlog.get_logger(__name__)

DEFAULT_WINDOW_SIZE = 60.0
DEFAULT_MAX_WAIT_CYCLES = 1000


@dataclass
class RateLimitInfo:
    """Snapshot of a limiter's state."""
    remaining: int
    reset_time: float  # monotonic timestamp when the oldest request expires
    retry_after: Optional[float] = None  # seconds until a slot frees up


class RateLimiter:
    """
    Sliding-window limiter with a burst cap.

    Usage:
        limiter = RateLimiter(requests_per_minute=30)
        await limiter.acquire()
    """

    def __init__(
        self,
        requests_per_minute: int,
        burst_limit: Optional[int] = None,
        window_size: float = DEFAULT_WINDOW_SIZE,
        max_wait_cycles: int = DEFAULT_MAX_WAIT_CYCLES,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize limiter.

        Args:
            requests_per_minute: Requests admitted per window
            burst_limit: Cap on requests inside one window
                         (defaults to a quarter of requests_per_minute)
            window_size: Window length in seconds
            max_wait_cycles: Upper bound on sleep/re-check cycles per acquire
            clock: Monotonic time source
        """
        self.requests_per_minute = requests_per_minute
        self.burst_limit = (
            burst_limit if burst_limit is not None
            else math.ceil(requests_per_minute / 4)
        )
        self.window_size = window_size
        self.max_wait_cycles = max_wait_cycles
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def threshold(self) -> int:
        """Effective number of requests admitted per window."""
        return min(self.burst_limit, self.requests_per_minute)

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_size:
            self._timestamps.popleft()

    def _wait_time(self, now: float) -> float:
        if not self._timestamps:
            return self.window_size
        return max(self._timestamps[0] + self.window_size - now, 0.0)

    async def acquire(self) -> None:
        """
        Wait for admission.

        Raises:
            RateLimitExceededError: If the limit admits nothing, or no slot
                                    opened within max_wait_cycles
        """
        if self.threshold <= 0:
            raise RateLimitExceededError(
                f"Rate limit admits no requests (requests_per_minute={self.requests_per_minute})"
            )

        for cycle in range(self.max_wait_cycles):
            async with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.threshold:
                    self._timestamps.append(now)
                    return
                wait = self._wait_time(now)

            if cycle == 0:
                logger.debug(
                    "rate_limit_wait",
                    wait_seconds=round(wait, 3),
                    in_window=len(self._timestamps),
                )
            # Small floor keeps a zero wait from spinning
            await asyncio.sleep(max(wait, 0.001))

        raise RateLimitExceededError(
            f"No rate limit slot after {self.max_wait_cycles} waits "
            f"(requests_per_minute={self.requests_per_minute})"
        )

    def get_request_count(self) -> int:
        """Number of requests currently inside the window."""
        self._prune(self._clock())
        return len(self._timestamps)

    def get_rate_limit_info(self) -> RateLimitInfo:
        now = self._clock()
        self._prune(now)
        remaining = max(self.threshold - len(self._timestamps), 0)
        reset_time = (
            self._timestamps[0] + self.window_size if self._timestamps else now
        )
        retry_after = None if remaining > 0 else self._wait_time(now)
        return RateLimitInfo(remaining=remaining, reset_time=reset_time, retry_after=retry_after)

    def reset(self) -> None:
        """Forget all recorded requests."""
        self._timestamps.clear()


class GlobalRateLimiter:
    """
    Registry of per-key limiters.

    Limiters are created on first use and reused for the same key.
    Held by a HarvestSession; lookups never await, so concurrent tasks
    cannot race on creation.
    """

    def __init__(
        self,
        default_requests_per_minute: int = 30,
        window_size: float = DEFAULT_WINDOW_SIZE,
    ):
        self.default_requests_per_minute = default_requests_per_minute
        self.window_size = window_size
        self._limiters: dict[str, RateLimiter] = {}

    def get_limiter(
        self,
        key: str,
        requests_per_minute: Optional[int] = None,
        burst_limit: Optional[int] = None,
    ) -> RateLimiter:
        """Get or create the limiter for key."""
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = RateLimiter(
                requests_per_minute=(
                    self.default_requests_per_minute if requests_per_minute is None
                    else requests_per_minute
                ),
                burst_limit=burst_limit,
                window_size=self.window_size,
            )
            self._limiters[key] = limiter
            logger.debug(
                "rate_limiter_created",
                key=key,
                requests_per_minute=limiter.requests_per_minute,
                burst_limit=limiter.burst_limit,
            )
        return limiter

    async def acquire(
        self,
        key: str,
        requests_per_minute: Optional[int] = None,
        burst_limit: Optional[int] = None,
    ) -> None:
        await self.get_limiter(key, requests_per_minute, burst_limit).acquire()

    def reset(self, key: str) -> None:
        """Drop the limiter for key."""
        self._limiters.pop(key, None)

    def reset_all(self) -> None:
        self._limiters.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._limiters

    def __len__(self) -> int:
        return len(self._limiters)
