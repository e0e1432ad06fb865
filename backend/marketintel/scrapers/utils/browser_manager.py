"""Playwright browser lifecycle for rendered retrievals.

One BrowserManager is owned by one scan invocation: it is opened with
``async with``, launches Chromium lazily on the first rendered retrieval,
reuses it for the rest of the invocation, and is closed exactly once when
the invocation ends.
"""

import asyncio
from typing import Optional, Sequence

import structlog
from playwright.async_api import (
    Browser,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from marketintel.scrapers.utils.proxy_manager import ProxyManager
from marketintel.scrapers.utils.user_agents import get_chrome_user_agent

logger = structlog.get_logger(__name__)

# Resource types aborted before they hit the network
BLOCKED_RESOURCE_TYPES = frozenset({"image", "font", "media"})


class BrowserManager:
    """Lazily launched, explicitly scoped Chromium handle.

    - Stealth JS injected into every context
    - Images, fonts and media blocked
    - Relaunched transparently if the browser process disconnects
    - ``close()`` is idempotent
    """

    def __init__(
        self,
        headless: bool = True,
        executable_path: Optional[str] = None,
        proxy_manager: Optional[ProxyManager] = None,
        block_resources: bool = True,
    ):
        self._headless = headless
        self._executable_path = executable_path or None
        self._proxy_manager = proxy_manager
        self._block_resources = block_resources
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        self._closed = False
        self.launch_count = 0

    async def __aenter__(self) -> "BrowserManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_launched(self) -> bool:
        return self._browser is not None

    def _on_disconnected(self, browser: Browser) -> None:
        if self._browser is browser:
            logger.warning("browser_disconnected")
            self._browser = None

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self._closed:
                raise RuntimeError("BrowserManager already closed")
            if self._browser and self._browser.is_connected():
                return self._browser

            if not self._playwright:
                self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless,
                executable_path=self._executable_path,
                args=[
                    "--disable-blink-features=AutomationControlled",
                    "--disable-dev-shm-usage",
                    "--no-sandbox",
                ],
            )
            self._browser.on("disconnected", self._on_disconnected)
            self.launch_count += 1
            logger.info("browser_started", headless=self._headless, launch_count=self.launch_count)
            return self._browser

    async def render(
        self,
        url: str,
        timeout: float,
        wait_selectors: Sequence[str] = (),
        max_scrolls: int = 0,
        scroll_wait: float = 1.5,
    ) -> str:
        """Navigate to a URL and return the rendered document HTML.

        Args:
            url: Page to load
            timeout: Seconds allowed for navigation and each selector wait
            wait_selectors: Any one of these appearing means content is ready
            max_scrolls: Upper bound on scroll-to-bottom iterations
            scroll_wait: Seconds to wait after each scroll for lazy content

        Returns:
            HTML of the rendered page
        """
        browser = await self._ensure_browser()

        proxy_url = self._proxy_manager.get_proxy() if self._proxy_manager else None
        context = await browser.new_context(
            user_agent=get_chrome_user_agent(),
            viewport={"width": 1280, "height": 800},
            locale="es-PA",
            timezone_id="America/Panama",
            proxy={"server": proxy_url} if proxy_url else None,
            java_script_enabled=True,
            bypass_csp=True,
        )
        try:
            await context.add_init_script(STEALTH_JS)
            if self._block_resources:
                await context.route("**/*", _block_heavy_resources)

            page = await context.new_page()
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)

            if wait_selectors:
                try:
                    await page.wait_for_selector(", ".join(wait_selectors), timeout=timeout * 1000)
                except PlaywrightTimeoutError:
                    # Content may still be there under a markup we don't wait on
                    logger.warning("wait_selector_timeout", url=url, selectors=list(wait_selectors))

            previous_height = 0
            for _ in range(max_scrolls):
                height = await page.evaluate("document.body.scrollHeight")
                if height == previous_height:
                    break
                previous_height = height
                await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
                await asyncio.sleep(scroll_wait)

            html = await page.content()
            if proxy_url:
                self._proxy_manager.mark_success(proxy_url)
            return html
        except Exception:
            if proxy_url:
                self._proxy_manager.mark_failed(proxy_url)
            raise
        finally:
            await context.close()

    async def close(self) -> None:
        """Close the browser and Playwright driver. Safe to call repeatedly."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._browser:
                try:
                    await self._browser.close()
                except Exception as e:
                    logger.warning("browser_close_failed", error=str(e))
                self._browser = None
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None
            logger.info("browser_stopped", launch_count=self.launch_count)


async def _block_heavy_resources(route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


# Minimal stealth JS to mask automation signals
STEALTH_JS = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['es-PA', 'es', 'en-US', 'en'] });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
window.chrome = { runtime: {} };
const originalQuery = window.navigator.permissions.query;
window.navigator.permissions.query = (parameters) =>
  parameters.name === 'notifications'
    ? Promise.resolve({ state: Notification.permission })
    : originalQuery(parameters);
"""
