import asyncio
import logging
from typing import Dict, Optional

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .domain import PageSnapshot
from .errors import NetworkError
from .interfaces import IBrowser
from .utils.html import extract_links

logger = logging.getLogger("rowpipe.browser")


class BrowserPool(IBrowser):
    """Playwright Chromium shared by all rows; at most `max_pages` pages open at once."""

    def __init__(self, max_pages: int = 4, headless: bool = True,
                 viewport: Optional[Dict[str, int]] = None, navigation_timeout: float = 30.0):
        self.headless = headless
        self.viewport = viewport or {"width": 1280, "height": 720}
        self.navigation_timeout = navigation_timeout
        self.pw = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self._pages = asyncio.Semaphore(max_pages)
        self._start_lock = asyncio.Lock()

    async def start(self):
        """Launches the browser once; later calls are no-ops."""
        async with self._start_lock:
            if self.context is not None:
                return
            pw = await async_playwright().start()
            try:
                browser = await pw.chromium.launch(headless=self.headless)
                context = await browser.new_context(viewport=self.viewport)
            except BaseException:
                await pw.stop()
                raise
            self.pw, self.browser, self.context = pw, browser, context
            logger.info(f"Browser started (headless={self.headless})")

    async def stop(self):
        """Clean up resources."""
        if self.context:
            await self.context.close()
        if self.browser:
            await self.browser.close()
        if self.pw:
            await self.pw.stop()
        self.pw, self.browser, self.context = None, None, None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def fetch_page(self, url: str) -> PageSnapshot:
        """Renders `url` and returns its HTML and absolute links."""
        if self.context is None:
            await self.start()
        async with self._pages:
            page = await self.context.new_page()
            try:
                await page.goto(url, wait_until="domcontentloaded",
                                timeout=self.navigation_timeout * 1000)
                try:
                    await page.wait_for_load_state("networkidle", timeout=5000)
                except PlaywrightTimeoutError:
                    logger.debug(f"{url} never went network-idle; using current DOM")
                html = await page.content()
                title = await page.title()
                final_url = page.url
            except PlaywrightError as e:
                raise NetworkError(url, str(e)) from e
            finally:
                await page.close()
        logger.debug(f"Rendered {final_url} ({len(html)} bytes)")
        return PageSnapshot(url=final_url, html=html, title=title, links=extract_links(html, final_url))
