import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, Page, Playwright, async_playwright

from embedrelay.configs import BrowserConfig, settings

logger = logging.getLogger(__name__)


class BrowserSessionError(RuntimeError):
    """Raised when pages are requested from a session that is not running."""


class BrowserSession:
    """
    Owns the one headless Chromium instance of the process.

    The session is started once at application startup and stopped once at shutdown. Every extraction
    attempt gets its own browser context and page, closed when the attempt ends.
    """

    def __init__(self, config: Optional[BrowserConfig] = None, user_agent: Optional[str] = None):
        self.config = config or settings.browser
        self.user_agent = user_agent or settings.user_agent
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._page_slots = asyncio.Semaphore(self.config.max_concurrent_pages)

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def start(self):
        """Launch the browser. Calling it on a running session is a no-op."""
        if self._browser is not None:
            return
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self.config.headless,
                args=self.config.launch_args,
            )
        except Exception:
            await self._playwright.stop()
            self._playwright = None
            raise
        logger.info("Headless browser launched")

    async def stop(self):
        """Close the browser and the Playwright driver."""
        if self._browser is not None:
            try:
                await self._browser.close()
            finally:
                self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Headless browser closed")

    @asynccontextmanager
    async def new_page(self) -> AsyncIterator[Page]:
        """
        Open an isolated page context for one extraction attempt.

        The context is closed on every exit path. At most ``max_concurrent_pages`` contexts are alive at
        once; further callers wait for a slot.

        Yields:
            Page: A fresh page in its own browser context.

        Raises:
            BrowserSessionError: If the session has not been started or has been stopped.
        """
        if self._browser is None:
            raise BrowserSessionError("Browser session is not running")

        async with self._page_slots:
            context = await self._browser.new_context(
                user_agent=self.user_agent,
                viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
            )
            try:
                page = await context.new_page()
                yield page
            finally:
                try:
                    await context.close()
                except Exception as e:
                    logger.error(f"Error closing page context: {e}")


browser_session = BrowserSession()
