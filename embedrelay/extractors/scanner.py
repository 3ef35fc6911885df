import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, NamedTuple, Optional, Sequence

from bs4 import BeautifulSoup

from embedrelay.configs import settings
from embedrelay.models import StreamCandidate, media_kind_for_url
from embedrelay.utils.http_utils import url_origin

logger = logging.getLogger(__name__)

SOURCES_PATTERN = re.compile(r"sources\s*:\s*(\[.*?\])", re.DOTALL)
FILE_M3U8_PATTERN = re.compile(r"""file\s*:\s*["']([^"']+\.m3u8[^"']*)["']""")
SRC_M3U8_PATTERN = re.compile(r"""src\s*:\s*["']([^"']+\.m3u8[^"']*)["']""")
BARE_M3U8_PATTERN = re.compile(r"""https?://[^\s"']+\.m3u8[^\s"']*""")
PAGE_URL_PATTERN = re.compile(r"""(https?://[^"'\s]+/(?:videos?|streams?|embed|player)/[^"'\s]+)""", re.IGNORECASE)


@dataclass(frozen=True)
class DomSnapshot:
    """What the fallback scanner looks at: player elements, inline scripts and the full markup."""

    html: str
    video_sources: List[str] = field(default_factory=list)
    iframe_sources: List[str] = field(default_factory=list)
    scripts: List[str] = field(default_factory=list)

    @classmethod
    def from_html(cls, html: str) -> "DomSnapshot":
        soup = BeautifulSoup(html, "lxml")

        def element_sources(selector: str) -> List[str]:
            sources = []
            for element in soup.select(selector):
                src = element.get("src") or element.get("data-src")
                if src:
                    sources.append(src.strip())
            return sources

        # JSON in scripts frequently escapes slashes
        scripts = [script.get_text().replace("\\/", "/") for script in soup.find_all("script")]
        return cls(
            html=html,
            video_sources=element_sources("video, video source"),
            iframe_sources=element_sources("iframe"),
            scripts=[text for text in scripts if text.strip()],
        )


class ScanStrategy(NamedTuple):
    name: str
    matcher: Callable[[DomSnapshot], bool]
    extractor: Callable[[DomSnapshot], List[str]]


def _parse_sources_array(raw: str) -> List[str]:
    try:
        data = json.loads(raw)
    except ValueError:
        try:
            data = json.loads(raw.replace("'", '"'))
        except ValueError:
            return []
    if not isinstance(data, list):
        return []

    found = []
    for item in data:
        if isinstance(item, dict):
            src = item.get("src") or item.get("file")
            if isinstance(src, str):
                found.append(src)
        elif isinstance(item, str):
            found.append(item)
    return found


def _json_sources(snapshot: DomSnapshot) -> List[str]:
    found = []
    for script in snapshot.scripts:
        match = SOURCES_PATTERN.search(script)
        if match:
            found.extend(_parse_sources_array(match.group(1)))
    return found


def _script_pattern_strategy(name: str, pattern: re.Pattern) -> ScanStrategy:
    def matcher(snapshot: DomSnapshot) -> bool:
        return any(pattern.search(script) for script in snapshot.scripts)

    def extractor(snapshot: DomSnapshot) -> List[str]:
        found = []
        for script in snapshot.scripts:
            match = pattern.search(script)
            if match:
                found.append(match.group(1) if match.groups() else match.group(0))
        return found

    return ScanStrategy(name, matcher, extractor)


DEFAULT_STRATEGIES: List[ScanStrategy] = [
    ScanStrategy("video", lambda s: bool(s.video_sources), lambda s: s.video_sources),
    ScanStrategy("iframe", lambda s: bool(s.iframe_sources), lambda s: s.iframe_sources),
    ScanStrategy("json", lambda s: any(SOURCES_PATTERN.search(t) for t in s.scripts), _json_sources),
    _script_pattern_strategy("script file", FILE_M3U8_PATTERN),
    _script_pattern_strategy("script src", SRC_M3U8_PATTERN),
    _script_pattern_strategy("script url", BARE_M3U8_PATTERN),
]


def normalize_candidate_url(src: str, page_url: str) -> Optional[str]:
    """
    Make a candidate absolute: ``http...`` is kept, ``//host/...`` gets https, ``/path`` gets the page origin.

    Anything else (blob:, about:blank, bare relative paths) is not a usable candidate.
    """
    src = src.strip()
    if src.startswith("//"):
        return f"https:{src}"
    if src.startswith("/"):
        return f"{url_origin(page_url)}{src}"
    if src.startswith("http"):
        return src
    return None


class FallbackScanner:
    """Recovers a stream URL from the rendered page when the network showed none."""

    def __init__(
        self, strategies: Optional[Sequence[ScanStrategy]] = None, ad_markers: Optional[Sequence[str]] = None
    ):
        self.strategies = list(DEFAULT_STRATEGIES if strategies is None else strategies)
        self.ad_markers = list(settings.capture.scan_ad_markers if ad_markers is None else ad_markers)

    def is_ad(self, url: str) -> bool:
        return any(marker in url for marker in self.ad_markers)

    def scan(self, snapshot: DomSnapshot, page_url: str) -> Optional[StreamCandidate]:
        """
        Run the strategies in order and return the first usable, non-ad candidate.

        If no strategy yields one, a broad pattern over the whole markup is the last resort.

        Args:
            snapshot (DomSnapshot): The rendered page.
            page_url (str): The navigated page URL, used to absolutize root-relative candidates.

        Returns:
            Optional[StreamCandidate]: The recovered stream, or None.
        """
        for strategy in self.strategies:
            if not strategy.matcher(snapshot):
                continue
            for src in strategy.extractor(snapshot):
                logger.info(f"Found {strategy.name} source: {src}")
                if self.is_ad(src):
                    logger.info("Skipping ad-related URL")
                    continue
                url = normalize_candidate_url(src, page_url)
                if url:
                    logger.info(f"Using {strategy.name} source: {url}")
                    return StreamCandidate(url=url, media_kind=media_kind_for_url(url), origin=strategy.name)

        logger.info("No video sources found, trying fallback pattern matching...")
        match = PAGE_URL_PATTERN.search(snapshot.html)
        if match:
            url = match.group(1)
            logger.info(f"Found URL using fallback pattern: {url}")
            return StreamCandidate(url=url, media_kind=media_kind_for_url(url), origin="page pattern")
        return None
