import asyncio
import logging
from typing import Optional

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from embedrelay.browser.capture import (
    NetworkCaptureListener,
    RequestInterceptor,
    ResourceGate,
    select_captured_stream,
)
from embedrelay.browser.session import BrowserSession, browser_session
from embedrelay.configs import settings
from embedrelay.extractors.base import BasePageExtractor, NavigationFailure, NavigationTimeout
from embedrelay.extractors.scanner import DomSnapshot, FallbackScanner
from embedrelay.models import CapturedUrlSet, StreamCandidate

logger = logging.getLogger(__name__)


class PageStreamExtractor(BasePageExtractor):
    """
    Loads a provider page in the headless browser and finds its stream.

    Network capture is preferred; the DOM/script scanner only runs when the network showed neither an
    HLS manifest nor a direct video.
    """

    def __init__(
        self,
        session: Optional[BrowserSession] = None,
        gate: Optional[ResourceGate] = None,
        scanner: Optional[FallbackScanner] = None,
    ):
        self.session = session or browser_session
        self.gate = gate or ResourceGate.from_config(settings.capture)
        self.scanner = scanner or FallbackScanner()
        self.config = self.session.config

    async def extract(self, page_url: str) -> Optional[StreamCandidate]:
        """
        Extract a stream from a provider page.

        Args:
            page_url (str): The provider page to load.

        Returns:
            Optional[StreamCandidate]: The stream found, or None when the page yields nothing.

        Raises:
            NavigationTimeout: If the page does not settle in time.
            NavigationFailure: If the page cannot be loaded.
        """
        captured = CapturedUrlSet()
        interceptor = RequestInterceptor(NetworkCaptureListener(captured), self.gate)

        async with self.session.new_page() as page:
            await interceptor.install(page)

            logger.info(f"Navigating to {page_url}")
            try:
                await page.goto(
                    page_url, wait_until="networkidle", timeout=self.config.navigation_timeout * 1000
                )
            except PlaywrightTimeoutError as e:
                raise NavigationTimeout(f"Timed out loading {page_url}") from e
            except PlaywrightError as e:
                raise NavigationFailure(f"Could not load {page_url}: {e}") from e

            # Players are injected by deferred scripts well after network idle
            await asyncio.sleep(self.config.settle_delay)

            try:
                await page.wait_for_selector(
                    self.config.player_selector, timeout=self.config.player_wait_timeout * 1000
                )
                logger.info("Video player detected")
            except PlaywrightTimeoutError:
                logger.info("No video player found immediately, continuing...")

            logger.info(f"Captured URLs summary for {page_url}: {captured.summary()}")
            candidate = select_captured_stream(captured)
            if candidate is not None:
                return candidate

            logger.info("Extracting video sources from the rendered page...")
            try:
                html = await page.content()
            except PlaywrightError as e:
                raise NavigationFailure(f"Could not read rendered page {page_url}: {e}") from e
            return self.scanner.scan(DomSnapshot.from_html(html), page.url or page_url)
