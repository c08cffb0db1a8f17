import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from rowpipe.browser import BrowserPool

HTML = '<html><head><title>Acme</title></head><body><a href="/about">About</a></body></html>'


def fake_playwright(launch_delay=0.05):
    """A playwright stand-in whose chromium launch takes a while."""
    page = MagicMock()
    page.goto = AsyncMock()
    page.wait_for_load_state = AsyncMock()
    page.content = AsyncMock(return_value=HTML)
    page.title = AsyncMock(return_value="Acme")
    page.close = AsyncMock()
    page.url = "https://acme.test/"

    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()

    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock()

    async def launch(headless=True):
        await asyncio.sleep(launch_delay)
        return browser

    pw = MagicMock()
    pw.chromium.launch = AsyncMock(side_effect=launch)
    pw.stop = AsyncMock()

    starter = MagicMock()
    starter.start = AsyncMock(return_value=pw)
    return MagicMock(return_value=starter), pw


class TestBrowserPool(unittest.IsolatedAsyncioTestCase):

    async def test_concurrent_first_fetches_share_one_launch(self):
        factory, pw = fake_playwright()
        with patch("rowpipe.browser.async_playwright", factory):
            pool = BrowserPool(max_pages=2)
            snapshots = await asyncio.gather(*[pool.fetch_page("https://acme.test/") for _ in range(3)])
            await pool.stop()

        self.assertEqual([s.title for s in snapshots], ["Acme"] * 3)
        self.assertEqual(snapshots[0].links, [("https://acme.test/about", "About")])
        self.assertEqual(factory.call_count, 1)
        self.assertEqual(pw.chromium.launch.await_count, 1)
        pw.stop.assert_awaited_once()

    async def test_failed_launch_leaves_pool_unstarted(self):
        factory, pw = fake_playwright()
        pw.chromium.launch = AsyncMock(side_effect=RuntimeError("no chromium"))
        with patch("rowpipe.browser.async_playwright", factory):
            pool = BrowserPool()
            with self.assertRaises(RuntimeError):
                await pool.fetch_page("https://acme.test/")

        self.assertIsNone(pool.pw)
        self.assertIsNone(pool.context)
        pw.stop.assert_awaited_once()
