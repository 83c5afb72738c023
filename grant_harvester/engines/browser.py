"""
Headless browser engine using Playwright.

Renders JavaScript-heavy listing pages in a stealth-configured Chromium,
then extracts containers with the same field logic as the static engine.
Browser, context and page are always released, including when the
overall timeout cancels the scrape.
"""

import asyncio
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import structlog
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout
from playwright.async_api import async_playwright

from grant_harvester.core.errors import (
    PermanentHTTPError,
    ScrapingError,
    SourceFailedError,
    TransientHTTPError,
)
from grant_harvester.core.http_client import RETRYABLE_STATUS_CODES
from grant_harvester.core.models import EngineKind, ProxyConfig, RawGrantData, SourceConfiguration
from grant_harvester.core.proxy_manager import ProxyManager
from grant_harvester.core.rate_limiter import RateLimiter
from grant_harvester.core.stealth import StealthBrowser, StealthConfig

from .base import extract_records, register_engine

logger = structlog.get_logger(__name__)

LAUNCH_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
)

SCROLL_JS = """
async () => {
  const delay = ms => new Promise(resolve => setTimeout(resolve, ms));
  const height = document.body.scrollHeight;
  const step = height / 4;
  for (let i = 0; i <= 4; i++) {
    window.scrollTo(0, step * i);
    await delay(300);
  }
  window.scrollTo(0, 0);
}
"""

OUTER_HTML_JS = "elements => elements.map(e => e.outerHTML)"


@dataclass
class BrowserOptions:
    """Browser engine settings. Times are in seconds."""
    headless: bool = True
    timeout: float = 30.0
    overall_timeout: float = 120.0
    block_resources: tuple[str, ...] = ("image", "font", "media")
    stealth: bool = True
    human_behavior: bool = False
    scroll: bool = True
    rate_limit_retries: int = 1
    screenshot_dir: Optional[str] = None
    launch_args: tuple[str, ...] = LAUNCH_ARGS


def playwright_proxy(proxy: ProxyConfig) -> dict[str, str]:
    """Proxy settings in the shape Playwright's launch() expects."""
    settings = {"server": f"{proxy.protocol}://{proxy.host}:{proxy.port}"}
    if proxy.username:
        settings["username"] = proxy.username
    if proxy.password:
        settings["password"] = proxy.password
    return settings


@register_engine(EngineKind.BROWSER)
class BrowserEngine:
    """
    Rendered-page extraction with anti-detection.

    Usage:
        engine = BrowserEngine(BrowserOptions(screenshot_dir="screenshots"))
        records = await engine.scrape(source)
    """

    def __init__(
        self,
        options: Optional[BrowserOptions] = None,
        stealth: Optional[StealthBrowser] = None,
        rate_limiter: Optional[RateLimiter] = None,
        proxy_manager: Optional[ProxyManager] = None,
        playwright_factory: Callable[[], Any] = async_playwright,
    ):
        """
        Initialize engine.

        Args:
            options: Engine settings
            stealth: Stealth capability (a default one is built when omitted)
            rate_limiter: Limiter consulted before each navigation
            proxy_manager: Proxy source for the browser
            playwright_factory: Returns an async context manager yielding a
                                Playwright instance
        """
        self.options = options or BrowserOptions()
        self.stealth = stealth or StealthBrowser(
            StealthConfig(human_behavior=self.options.human_behavior)
        )
        self.rate_limiter = rate_limiter
        self.proxy_manager = proxy_manager
        self._playwright_factory = playwright_factory
        self.logger = logger.bind(engine="browser")

    async def scrape(self, source: SourceConfiguration) -> list[RawGrantData]:
        """
        Harvest one rendered listing page.

        Raises:
            SourceFailedError: The browser could not be driven, navigation
                               failed, the page stayed blocked or the
                               overall timeout elapsed
        """
        self.logger.info("browser_scrape_started", source_id=source.id, url=source.url)
        try:
            records = await asyncio.wait_for(self._scrape(source), timeout=self.options.overall_timeout)
        except asyncio.TimeoutError as e:
            self.logger.error("browser_scrape_timeout", source_id=source.id, timeout=self.options.overall_timeout)
            raise SourceFailedError(
                source.id,
                source.url,
                TimeoutError(f"Browser scrape timed out after {self.options.overall_timeout}s"),
            ) from e
        except PlaywrightError as e:
            self.logger.error("browser_scrape_failed", source_id=source.id, error=str(e))
            raise SourceFailedError(source.id, source.url, e) from e

        self.logger.info("browser_scrape_finished", source_id=source.id, records=len(records))
        return records

    async def _launch_options(self) -> dict[str, Any]:
        launch: dict[str, Any] = {
            "headless": self.options.headless,
            "args": list(self.options.launch_args),
        }
        if self.proxy_manager is not None:
            proxy = await self.proxy_manager.get_next_proxy()
            if proxy is not None:
                launch["proxy"] = playwright_proxy(proxy)
        return launch

    async def _scrape(self, source: SourceConfiguration) -> list[RawGrantData]:
        async with AsyncExitStack() as stack:
            playwright = await stack.enter_async_context(self._playwright_factory())
            browser = await playwright.chromium.launch(**await self._launch_options())
            stack.push_async_callback(browser.close)

            context_options = self.stealth.context_options() if self.options.stealth else {}
            if source.headers:
                headers = dict(context_options.get("extra_http_headers", {}))
                headers.update(source.headers)
                context_options["extra_http_headers"] = headers
            context = await browser.new_context(**context_options)
            stack.push_async_callback(context.close)

            page = await context.new_page()
            stack.push_async_callback(page.close)

            return await self._harvest_page(page, source)

    async def _block_resources(self, route) -> None:
        if route.request.resource_type in self.options.block_resources:
            await route.abort()
        else:
            await route.continue_()

    async def _harvest_page(self, page, source: SourceConfiguration) -> list[RawGrantData]:
        if self.options.stealth:
            await self.stealth.apply_stealth_techniques(page)
        if self.options.block_resources:
            await page.route("**/*", self._block_resources)

        attempts = self.options.rate_limit_retries + 1
        for attempt in range(1, attempts + 1):
            await self._navigate(page, source)
            await self._wait_for_content(page, source)

            if not await self.stealth.handle_anti_bot(page):
                await self._fail(page, source, ScrapingError("Page blocked by bot detection"))
            if not await self.stealth.bypass_challenge(page):
                await self._fail(page, source, ScrapingError("Bot detection challenge did not resolve"))

            if await self.stealth.detect_and_handle_rate_limit(page):
                break
            if attempt == attempts:
                await self._fail(page, source, ScrapingError("Page kept reporting rate limit"))
            self.logger.info("browser_rate_limit_retry", source_id=source.id, attempt=attempt)

        if self.options.human_behavior:
            await self.stealth.simulate_human_behavior(page)
        if self.options.scroll:
            await self._scroll(page)

        return await self.extract(page, source)

    async def _navigate(self, page, source: SourceConfiguration) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        try:
            response = await page.goto(
                source.url,
                wait_until="domcontentloaded",
                timeout=self.options.timeout * 1000,
            )
        except PlaywrightError as e:
            await self._fail(page, source, e)

        if response is None:
            await self._fail(page, source, ScrapingError(f"No response received from {source.url}"))
        if response.status in RETRYABLE_STATUS_CODES:
            await self._fail(page, source, TransientHTTPError(response.status, source.url))
        if response.status >= 400:
            await self._fail(page, source, PermanentHTTPError(response.status, source.url))

        if self.options.stealth:
            await self.stealth.human_delay(1.0, 3.0)

    async def _wait_for_content(self, page, source: SourceConfiguration) -> None:
        selector = source.selectors.grant_container
        if not selector:
            return
        try:
            await page.wait_for_selector(selector, timeout=self.options.timeout * 1000, state="visible")
        except PlaywrightTimeout:
            self.logger.warning(
                "ready_selector_timeout",
                source_id=source.id,
                selector=selector,
            )

    async def _scroll(self, page) -> None:
        """Scroll through the page to trigger lazy loading."""
        try:
            await page.evaluate(SCROLL_JS)
        except PlaywrightError as e:
            self.logger.warning("scroll_failed", error=str(e))

    async def extract(self, page, source: SourceConfiguration) -> list[RawGrantData]:
        """Extract records from the rendered page, in document order."""
        selector = source.selectors.grant_container
        try:
            markup = await page.eval_on_selector_all(selector, OUTER_HTML_JS) if selector else []
        except PlaywrightError as e:
            self.logger.warning("container_query_failed", source_id=source.id, selector=selector, error=str(e))
            markup = []

        if not markup:
            self.logger.warning("no_containers_found", source_id=source.id, selector=selector)
            return []

        containers = []
        for fragment in markup:
            element = BeautifulSoup(fragment, "html.parser").find(True)
            if element is not None:
                containers.append(element)
        return extract_records(containers, source, engine="browser")

    async def capture_screenshot(self, page, source: SourceConfiguration) -> Optional[Path]:
        """
        Save a full-page diagnostic screenshot.

        Returns:
            Screenshot path, or None when disabled or capture failed
        """
        if not self.options.screenshot_dir:
            return None
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        path = Path(self.options.screenshot_dir) / f"error-{source.id}-{timestamp}.png"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(path), full_page=True)
        except (PlaywrightError, OSError) as e:
            self.logger.warning("screenshot_failed", source_id=source.id, error=str(e))
            return None
        self.logger.info("screenshot_saved", source_id=source.id, path=str(path))
        return path

    async def _fail(self, page, source: SourceConfiguration, cause: BaseException) -> None:
        """Capture a screenshot and raise a source-level failure."""
        self.logger.error("browser_navigation_failed", source_id=source.id, error=str(cause))
        await self.capture_screenshot(page, source)
        raise SourceFailedError(source.id, source.url, cause) from cause
