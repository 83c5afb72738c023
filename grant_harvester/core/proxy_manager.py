"""
Health-checked proxy rotation.

A ProxyManager probes its proxies on a background task and hands out only
healthy ones using a configurable strategy. ProxyPool groups several
managers by name and tears all of them down together.
"""

import asyncio
import random
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import httpx
import structlog

from .models import ProxyConfig, ProxyHealth

logger = structlog.get_logger(__name__)

HEALTH_CHECK_URL = "https://httpbin.org/ip"


class RotationStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    RANDOM = "random"
    LEAST_USED = "least_used"
    FASTEST = "fastest"


class ProxyManager:
    """
    Rotating proxy manager with periodic health checks.

    All mutations of the health map and rotation index happen under one
    asyncio.Lock, so a manager can be shared by concurrent tasks.

    Usage:
        async with ProxyManager(proxies) as manager:
            proxy = await manager.get_next_proxy()
    """

    def __init__(
        self,
        proxies: Optional[list[ProxyConfig]] = None,
        strategy: RotationStrategy = RotationStrategy.ROUND_ROBIN,
        health_check_interval: float = 300.0,
        health_check_timeout: float = 10.0,
        max_error_count: int = 3,
        health_check_url: str = HEALTH_CHECK_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize manager.

        Args:
            proxies: Initial proxy list
            strategy: Selection strategy for get_next_proxy
            health_check_interval: Seconds between health sweeps
            health_check_timeout: Probe timeout in seconds
            max_error_count: Consecutive failures before a proxy is benched
            health_check_url: Endpoint probed through each proxy
            transport: Optional httpx transport used for probes
        """
        self.strategy = RotationStrategy(strategy)
        self.health_check_interval = health_check_interval
        self.health_check_timeout = health_check_timeout
        self.max_error_count = max_error_count
        self.health_check_url = health_check_url
        self._transport = transport

        self._health: dict[str, ProxyHealth] = {}
        self._index = 0
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.logger = logger.bind(strategy=self.strategy.value)

        for proxy in proxies or []:
            self._health[proxy.key] = ProxyHealth(proxy=proxy)

    async def __aenter__(self) -> "ProxyManager":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # --- Lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Start the background health-check loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._health_loop())
            self.logger.debug("proxy_health_loop_started", proxies=len(self._health))

    def stop(self) -> None:
        """Request cancellation of the health-check loop without waiting."""
        if self._task is not None:
            self._task.cancel()

    async def close(self) -> None:
        """Cancel the health-check loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.debug("proxy_health_loop_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _health_loop(self) -> None:
        while True:
            await self.check_all_proxies()
            await asyncio.sleep(self.health_check_interval)

    # --- Health checks ----------------------------------------------------

    def _probe_client(self, proxy: ProxyConfig) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.health_check_timeout)
        if self._transport is not None:
            return httpx.AsyncClient(transport=self._transport, timeout=timeout)
        return httpx.AsyncClient(proxy=proxy.url, timeout=timeout)

    async def check_proxy(self, proxy: ProxyConfig) -> bool:
        """
        Probe one proxy and record the outcome.

        Any 200 response counts as healthy.

        Returns:
            True if the probe succeeded
        """
        started = time.monotonic()
        try:
            async with self._probe_client(proxy) as client:
                response = await client.get(self.health_check_url)
            healthy = response.status_code == 200
            error = None if healthy else f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            healthy = False
            error = str(e) or e.__class__.__name__

        elapsed = time.monotonic() - started
        async with self._lock:
            health = self._health.get(proxy.key)
            if health is None:
                return healthy
            health.last_checked = datetime.now(timezone.utc)
            if healthy:
                health.is_healthy = True
                health.response_time = elapsed
                health.error_count = 0
            else:
                self._record_error(health)

        if not healthy:
            self.logger.debug("proxy_probe_failed", proxy=proxy.key, error=error)
        return healthy

    async def check_all_proxies(self) -> dict[str, bool]:
        """Probe every proxy concurrently."""
        proxies = [h.proxy for h in self._health.values()]
        results = await asyncio.gather(*(self.check_proxy(p) for p in proxies))
        outcome = {p.key: ok for p, ok in zip(proxies, results)}
        self.logger.info(
            "proxy_health_checked",
            total=len(outcome),
            healthy=sum(outcome.values()),
        )
        return outcome

    def _record_error(self, health: ProxyHealth) -> None:
        health.error_count += 1
        if health.error_count >= self.max_error_count and health.is_healthy:
            health.is_healthy = False
            self.logger.warning(
                "proxy_marked_unhealthy",
                proxy=health.proxy.key,
                errors=health.error_count,
            )

    # --- Selection --------------------------------------------------------

    async def get_next_proxy(self) -> Optional[ProxyConfig]:
        """
        Select a healthy proxy.

        Returns:
            ProxyConfig or None when no proxy is healthy
        """
        async with self._lock:
            healthy = [h for h in self._health.values() if h.is_healthy]
            if not healthy:
                return None

            if self.strategy == RotationStrategy.RANDOM:
                chosen = random.choice(healthy)
            elif self.strategy == RotationStrategy.LEAST_USED:
                chosen = min(healthy, key=lambda h: h.success_count)
            elif self.strategy == RotationStrategy.FASTEST:
                chosen = min(
                    healthy,
                    key=lambda h: h.response_time if h.response_time is not None else float("inf"),
                )
            else:
                chosen = healthy[self._index % len(healthy)]
                self._index = (self._index + 1) % len(healthy)

            return chosen.proxy

    async def mark_proxy_as_used(
        self,
        proxy: ProxyConfig,
        response_time: Optional[float] = None,
    ) -> None:
        """Record a successful request through proxy."""
        async with self._lock:
            health = self._health.get(proxy.key)
            if health is None:
                return
            health.success_count += 1
            health.error_count = 0
            if response_time is not None:
                health.response_time = response_time

    async def mark_proxy_as_errored(self, proxy: ProxyConfig) -> None:
        """Record a failed request through proxy."""
        async with self._lock:
            health = self._health.get(proxy.key)
            if health is not None:
                self._record_error(health)

    # --- Administration ---------------------------------------------------

    async def add_proxy(self, proxy: ProxyConfig) -> None:
        async with self._lock:
            self._health.setdefault(proxy.key, ProxyHealth(proxy=proxy))

    async def remove_proxy(self, proxy: ProxyConfig) -> None:
        async with self._lock:
            self._health.pop(proxy.key, None)

    async def reset_stats(self) -> None:
        """Mark every proxy healthy again and zero its counters."""
        async with self._lock:
            for key, health in self._health.items():
                self._health[key] = ProxyHealth(proxy=health.proxy)
            self._index = 0

    def get_healthy_proxies(self) -> list[ProxyConfig]:
        return [h.proxy for h in self._health.values() if h.is_healthy]

    def get_proxy_stats(self) -> dict:
        records = list(self._health.values())
        return {
            "total": len(records),
            "healthy": sum(1 for h in records if h.is_healthy),
            "unhealthy": sum(1 for h in records if not h.is_healthy),
            "proxies": [h.to_dict() for h in records],
        }

    def get_health(self, proxy: ProxyConfig) -> Optional[ProxyHealth]:
        return self._health.get(proxy.key)

    def __len__(self) -> int:
        return len(self._health)


class ProxyPool:
    """
    Named ProxyManager instances.

    Closing the pool stops every manager's health loop.
    """

    def __init__(self):
        self._managers: dict[str, ProxyManager] = {}

    def create_pool(
        self,
        name: str,
        proxies: list[ProxyConfig],
        start: bool = True,
        **options,
    ) -> ProxyManager:
        """
        Create (or replace) the manager for name.

        Args:
            name: Pool name (e.g. a source class)
            proxies: Proxies in the pool
            start: Start health checks immediately (needs a running loop)
            **options: ProxyManager keyword arguments
        """
        if name in self._managers:
            logger.warning("proxy_pool_replaced", pool=name)
            self._managers.pop(name).stop()
        manager = ProxyManager(proxies, **options)
        self._managers[name] = manager
        if start:
            manager.start()
        logger.info("proxy_pool_created", pool=name, proxies=len(proxies))
        return manager

    def get_pool(self, name: str) -> Optional[ProxyManager]:
        return self._managers.get(name)

    async def get_next_proxy(self, name: str) -> Optional[ProxyConfig]:
        manager = self._managers.get(name)
        if manager is None:
            return None
        return await manager.get_next_proxy()

    async def remove_pool(self, name: str) -> None:
        manager = self._managers.pop(name, None)
        if manager is not None:
            await manager.close()

    async def close(self) -> None:
        """Stop every manager's background health checks."""
        managers = list(self._managers.values())
        self._managers.clear()
        for manager in managers:
            await manager.close()
        if managers:
            logger.info("proxy_pools_closed", pools=len(managers))

    def get_all_stats(self) -> dict[str, dict]:
        return {name: m.get_proxy_stats() for name, m in self._managers.items()}

    def __contains__(self, name: str) -> bool:
        return name in self._managers

    def __len__(self) -> int:
        return len(self._managers)
