"""
Network capture and resource gating for one page context.

Both run inside a single request interception hook so every outbound request is seen by the listener
and decided by the gate exactly once, in the order the page issues them.
"""

import logging
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from playwright.async_api import Error as PlaywrightError, Page, Request, Response, Route

from embedrelay.configs import CaptureConfig, settings
from embedrelay.const import DIRECT_VIDEO_EXTENSIONS, HLS_EXTENSIONS
from embedrelay.models import CaptureCategory, CapturedUrlSet, MediaKind, StreamCandidate

logger = logging.getLogger(__name__)


def classify_url(url: str) -> Optional[CaptureCategory]:
    """Classify a URL as an HLS manifest or a direct video by substring, or None."""
    lowered = url.lower()
    if any(ext in lowered for ext in HLS_EXTENSIONS):
        return CaptureCategory.HLS_MANIFEST
    if any(ext in lowered for ext in DIRECT_VIDEO_EXTENSIONS):
        return CaptureCategory.DIRECT_VIDEO
    return None


def contains_marker(url: str, markers: Iterable[str]) -> bool:
    return any(marker in url for marker in markers)


class NetworkCaptureListener:
    """Appends every media-looking request of a page to its CapturedUrlSet."""

    def __init__(self, captured: CapturedUrlSet):
        self.captured = captured

    def on_request(self, url: str, resource_type: str, is_subframe_document: bool = False) -> None:
        category = classify_url(url)
        if category is None:
            if is_subframe_document:
                category = CaptureCategory.IFRAME_EMBED
            elif resource_type == "media":
                category = CaptureCategory.OTHER
            else:
                return
        self.captured.add(category, url)
        if category is CaptureCategory.HLS_MANIFEST:
            logger.info(f"Found M3U8: {url}")
        elif category is CaptureCategory.DIRECT_VIDEO:
            logger.info(f"Found video: {url}")
        else:
            logger.debug(f"Captured {category.value}: {url}")

    def on_response(self, url: str, content_type: str) -> None:
        # Playlists served from extension-less URLs only reveal themselves by content type.
        if classify_url(url) is None and "mpegurl" in (content_type or "").lower():
            self.captured.add(CaptureCategory.HLS_MANIFEST, url)
            logger.info(f"Found M3U8 by content type: {url}")


class GateDecision(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


class ResourceGate:
    """Decides which requests of a page may proceed."""

    def __init__(self, blocked_resource_types: Sequence[str], blocked_url_markers: Sequence[str]):
        self.blocked_resource_types = set(blocked_resource_types)
        self.blocked_url_markers = list(blocked_url_markers)

    @classmethod
    def from_config(cls, config: CaptureConfig) -> "ResourceGate":
        return cls(config.blocked_resource_types, config.blocked_url_markers)

    def decide(self, url: str, resource_type: str, is_main_document: bool = False) -> GateDecision:
        if is_main_document:
            return GateDecision.ALLOW
        if resource_type in self.blocked_resource_types or contains_marker(url, self.blocked_url_markers):
            return GateDecision.BLOCK
        return GateDecision.ALLOW


def _frame_position(request: Request) -> tuple[bool, bool]:
    """Return (is_main_document, is_subframe_document) for a request."""
    if request.resource_type != "document":
        return False, False
    try:
        is_main_frame = request.frame.parent_frame is None
    except PlaywrightError:
        # Service worker requests have no frame
        return False, False
    return is_main_frame and request.is_navigation_request(), not is_main_frame


class RequestInterceptor:
    """The single interception hook of a page: capture first, then gate."""

    def __init__(self, listener: NetworkCaptureListener, gate: ResourceGate):
        self.listener = listener
        self.gate = gate

    async def install(self, page: Page) -> None:
        await page.route("**/*", self.handle_route)
        page.on("response", self.handle_response)

    async def handle_route(self, route: Route) -> None:
        request = route.request
        is_main_document, is_subframe_document = _frame_position(request)
        self.listener.on_request(request.url, request.resource_type, is_subframe_document)
        decision = self.gate.decide(request.url, request.resource_type, is_main_document)
        try:
            if decision is GateDecision.BLOCK:
                await route.abort()
            else:
                await route.continue_()
        except PlaywrightError as e:
            # The page may close while requests are still in flight
            logger.debug(f"Could not {decision.value} {request.url}: {e}")

    async def handle_response(self, response: Response) -> None:
        self.listener.on_response(response.url, response.headers.get("content-type", ""))


def select_captured_stream(
    captured: CapturedUrlSet, preferred_markers: Optional[Sequence[str]] = None
) -> Optional[StreamCandidate]:
    """
    Pick the stream to use from what the network showed.

    HLS beats direct video. Among HLS manifests the first one carrying a preferred marker wins over
    the first one seen, since providers load a decoy manifest next to the real one.
    """
    if preferred_markers is None:
        preferred_markers = settings.capture.preferred_manifest_markers

    manifests: List[str] = captured.unique(CaptureCategory.HLS_MANIFEST)
    if manifests:
        best = next((url for url in manifests if contains_marker(url, preferred_markers)), manifests[0])
        logger.info(f"Using best M3U8 URL: {best}")
        return StreamCandidate(url=best, media_kind=MediaKind.HLS, origin="network")

    videos = captured.unique(CaptureCategory.DIRECT_VIDEO)
    if videos:
        logger.info(f"Using captured video URL: {videos[0]}")
        return StreamCandidate(url=videos[0], media_kind=MediaKind.DIRECT, origin="network")
    return None
