"""
Anti-detection helpers for headless browser sessions.

StealthBrowser is a capability object: a fixed set of named page mutations
(injected as init scripts before navigation), context identity
randomization, optional human-like input, and three post-navigation checks
(anti-bot page, challenge widget, rate-limit message). It only relies on
the page methods ``add_init_script``, ``content``, ``inner_text``,
``wait_for_selector``, ``evaluate``, ``mouse.move`` and ``viewport_size``,
so any automation backend exposing them can be used.
"""

import asyncio
import json
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .http_client import ACCEPT_LANGUAGES, USER_AGENTS

logger = structlog.get_logger(__name__)

SCREEN_RESOLUTIONS = [
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
    {"width": 1280, "height": 720},
]

TIMEZONES = [
    "America/New_York",
    "America/Los_Angeles",
    "Europe/London",
    "Europe/Berlin",
    "Asia/Tokyo",
]

LANGUAGE_SETS = [
    ["en-US", "en"],
    ["en-GB", "en"],
    ["en-US", "en", "es"],
    ["en-US", "en", "fr"],
    ["en-US", "en", "de"],
]

ANTI_BOT_INDICATORS = [
    "cloudflare",
    "captcha",
    "bot-detection",
    "access-denied",
    "access denied",
    "blocked",
]

RATE_LIMIT_INDICATORS = [
    "rate limit",
    "too many requests",
    "429",
    "slow down",
    "try again later",
]

CHALLENGE_SELECTOR = "#cf-challenge-running"


# --- Init scripts ------------------------------------------------------------

MASK_AUTOMATION_JS = """
() => {
  Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
  for (const key of Object.keys(window)) {
    if (key.startsWith('cdc_')) { delete window[key]; }
  }
  window.chrome = window.chrome || { runtime: {} };
}
"""

MOCK_PLUGINS_JS = """
() => {
  const mimeTypes = [
    { type: 'application/pdf', suffixes: 'pdf', description: 'Portable Document Format' },
    { type: 'application/x-google-chrome-pdf', suffixes: 'pdf', description: 'Portable Document Format' },
  ];
  const plugins = [
    { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
    { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' },
    { name: 'Native Client', filename: 'internal-nacl-plugin', description: '' },
  ];
  plugins.forEach((p, i) => { p[0] = mimeTypes[i % mimeTypes.length]; p.length = 1; });
  Object.defineProperty(navigator, 'plugins', { get: () => plugins });
  Object.defineProperty(navigator, 'mimeTypes', { get: () => mimeTypes });
}
"""

MOCK_PERMISSIONS_JS = """
() => {
  if (!navigator.permissions || !navigator.permissions.query) { return; }
  const originalQuery = navigator.permissions.query.bind(navigator.permissions);
  navigator.permissions.query = (parameters) => {
    if (parameters && parameters.name === 'notifications') {
      return Promise.resolve({ state: 'denied', name: 'notifications', onchange: null });
    }
    return originalQuery(parameters);
  };
}
"""

BLOCK_WEBRTC_JS = """
() => {
  if (navigator.mediaDevices) {
    navigator.mediaDevices.getUserMedia = () => Promise.reject(new Error('Permission denied'));
    navigator.mediaDevices.enumerateDevices = () => Promise.resolve([]);
  }
}
"""

NOISE_CANVAS_JS = """
() => {
  const toDataURL = HTMLCanvasElement.prototype.toDataURL;
  HTMLCanvasElement.prototype.toDataURL = function (...args) {
    const context = this.getContext('2d');
    if (context && this.width && this.height) {
      const image = context.getImageData(0, 0, this.width, this.height);
      for (let i = 0; i < image.data.length; i += 4) {
        image.data[i] += Math.floor(Math.random() * 3) - 1;
        image.data[i + 1] += Math.floor(Math.random() * 3) - 1;
        image.data[i + 2] += Math.floor(Math.random() * 3) - 1;
      }
      context.putImageData(image, 0, 0);
    }
    return toDataURL.apply(this, args);
  };
}
"""

RANDOMIZE_LOCALE_JS = """
([timeZone, languages]) => {
  const resolvedOptions = Intl.DateTimeFormat.prototype.resolvedOptions;
  Object.defineProperty(Intl.DateTimeFormat.prototype, 'resolvedOptions', {
    value: function () { return { ...resolvedOptions.call(this), timeZone }; },
  });
  Object.defineProperty(navigator, 'languages', { get: () => languages });
  Object.defineProperty(navigator, 'language', { get: () => languages[0] });
}
"""


@dataclass
class StealthConfig:
    """Which stealth techniques are enabled."""
    mask_automation: bool = True
    mock_plugins: bool = True
    mock_permissions: bool = True
    block_webrtc: bool = True
    noise_canvas: bool = True
    randomize_locale: bool = True
    human_behavior: bool = True
    min_human_delay: float = 0.5
    max_human_delay: float = 2.0


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


def random_viewport() -> dict[str, int]:
    return dict(random.choice(SCREEN_RESOLUTIONS))


class StealthBrowser:
    """
    Stealth capability for one browser session.

    Usage:
        stealth = StealthBrowser()
        context = await browser.new_context(**stealth.context_options())
        page = await context.new_page()
        await stealth.apply_stealth_techniques(page)
        await page.goto(url)
        if not await stealth.handle_anti_bot(page):
            ...
    """

    MUTATIONS = (
        "mask_automation",
        "mock_plugins",
        "mock_permissions",
        "block_webrtc",
        "noise_canvas",
        "randomize_locale",
    )

    def __init__(
        self,
        config: Optional[StealthConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or StealthConfig()
        self._sleep = sleep
        self.timezone = random.choice(TIMEZONES)
        self.languages = list(random.choice(LANGUAGE_SETS))

    # --- Context identity -------------------------------------------------

    def context_options(self) -> dict[str, Any]:
        """Keyword arguments for creating a randomized browser context."""
        return {
            "user_agent": random_user_agent(),
            "viewport": random_viewport(),
            "locale": self.languages[0],
            "timezone_id": self.timezone,
            "extra_http_headers": self.context_headers(),
        }

    def context_headers(self) -> dict[str, str]:
        return {
            "Accept-Language": random.choice(ACCEPT_LANGUAGES),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
            "Upgrade-Insecure-Requests": "1",
        }

    async def setup_stealth_context(self, context) -> None:
        """Apply randomized headers to an existing context."""
        await context.set_extra_http_headers(self.context_headers())

    # --- Named mutations --------------------------------------------------

    async def mask_automation(self, page) -> None:
        await page.add_init_script(script=f"({MASK_AUTOMATION_JS})()")

    async def mock_plugins(self, page) -> None:
        await page.add_init_script(script=f"({MOCK_PLUGINS_JS})()")

    async def mock_permissions(self, page) -> None:
        await page.add_init_script(script=f"({MOCK_PERMISSIONS_JS})()")

    async def block_webrtc(self, page) -> None:
        await page.add_init_script(script=f"({BLOCK_WEBRTC_JS})()")

    async def noise_canvas(self, page) -> None:
        await page.add_init_script(script=f"({NOISE_CANVAS_JS})()")

    async def randomize_locale(self, page) -> None:
        args = json.dumps([self.timezone, self.languages])
        await page.add_init_script(script=f"({RANDOMIZE_LOCALE_JS})({args})")

    async def apply_stealth_techniques(self, page) -> list[str]:
        """
        Apply every enabled mutation to page.

        Must run before navigation.

        Returns:
            Names of the mutations applied
        """
        applied = []
        for name in self.MUTATIONS:
            if getattr(self.config, name):
                await getattr(self, name)(page)
                applied.append(name)
        logger.debug("stealth_applied", mutations=applied)
        return applied

    # --- Human behaviour --------------------------------------------------

    async def human_delay(self, minimum: Optional[float] = None, maximum: Optional[float] = None) -> None:
        low = self.config.min_human_delay if minimum is None else minimum
        high = self.config.max_human_delay if maximum is None else maximum
        await self._sleep(random.uniform(low, high))

    async def simulate_human_behavior(self, page) -> None:
        """Move the mouse, scroll a little and pause."""
        viewport = page.viewport_size
        if viewport:
            await page.mouse.move(
                random.random() * viewport["width"],
                random.random() * viewport["height"],
                steps=random.randint(5, 15),
            )
        await page.evaluate(f"window.scrollBy(0, {random.randint(0, 100)})")
        await self.human_delay()

    # --- Post-navigation checks -------------------------------------------

    async def _page_text(self, page) -> str:
        try:
            return (await page.inner_text("body")).lower()
        except PlaywrightError as e:
            logger.debug("page_text_unavailable", error=str(e))
            return (await page.content()).lower()

    async def handle_anti_bot(self, page, wait: float = 5.0) -> bool:
        """
        Detect blocking pages and give a challenge time to resolve.

        Returns:
            True if it is safe to continue extracting
        """
        text = await self._page_text(page)
        found = [i for i in ANTI_BOT_INDICATORS if i in text]
        if not found:
            return True

        logger.warning("anti_bot_detected", indicators=found)
        await self._sleep(wait + random.uniform(0, 2))

        text = await self._page_text(page)
        cleared = not any(i in text for i in ANTI_BOT_INDICATORS)
        if not cleared:
            logger.warning("anti_bot_persisted", indicators=found)
        return cleared

    async def bypass_challenge(
        self,
        page,
        resolve_timeout: float = 30.0,
        selector: str = CHALLENGE_SELECTOR,
    ) -> bool:
        """
        Wait for a challenge widget on the page to go away.

        Returns:
            True if no challenge is present or it resolved in time
        """
        if await page.query_selector(selector) is None:
            return True

        logger.info("challenge_detected", selector=selector)
        try:
            await page.wait_for_selector(selector, state="detached", timeout=resolve_timeout * 1000)
        except PlaywrightTimeout as e:
            logger.warning("challenge_unresolved", selector=selector, error=str(e))
            return False

        await self.human_delay(2.0, 5.0)
        return True

    async def detect_and_handle_rate_limit(
        self,
        page,
        min_backoff: float = 30.0,
        max_backoff: float = 60.0,
    ) -> bool:
        """
        Back off when the page shows a rate-limit message.

        Returns:
            False after backing off (the caller should retry), True otherwise
        """
        text = await self._page_text(page)
        if not any(i in text for i in RATE_LIMIT_INDICATORS):
            return True

        backoff = random.uniform(min_backoff, max_backoff)
        logger.warning("page_rate_limited", backoff_seconds=round(backoff, 1))
        await self._sleep(backoff)
        return False
