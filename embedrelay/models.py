from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ContentKind(str, Enum):
    MOVIE = "movie"
    TV = "tv"


class MediaKind(str, Enum):
    HLS = "hls"
    DIRECT = "direct"


class CaptureCategory(str, Enum):
    HLS_MANIFEST = "hlsManifest"
    DIRECT_VIDEO = "directVideo"
    IFRAME_EMBED = "iframeEmbed"
    OTHER = "other"


@dataclass(frozen=True)
class ContentIdentifier:
    """A movie, or one episode of a TV show, keyed by its metadata id."""

    kind: ContentKind
    tmdb_id: str
    season: Optional[int] = None
    episode: Optional[int] = None


@dataclass(frozen=True)
class ExtractionRequest:
    """
    What the client asked us to extract.

    At least one of ``source_page_url`` and ``content`` is set. When only the page URL is known the
    content kind is guessed from the URL path.
    """

    source_page_url: Optional[str] = None
    content: Optional[ContentIdentifier] = None

    @property
    def content_kind(self) -> ContentKind:
        if self.content is not None:
            return self.content.kind
        if self.source_page_url and "/tv/" in self.source_page_url:
            return ContentKind.TV
        return ContentKind.MOVIE


@dataclass(frozen=True)
class StreamCandidate:
    """A stream URL recovered from one page, already absolute."""

    url: str
    media_kind: MediaKind
    origin: str  # "network" or the name of the fallback strategy that found it


@dataclass(frozen=True)
class ExtractionResult:
    stream_url: str
    media_kind: MediaKind
    content_kind: ContentKind
    source_provider_name: str
    page_url: str


@dataclass(frozen=True)
class SourceAttempt:
    """Diagnostic record of one provider tried by the resolver."""

    source: str
    page_url: Optional[str]
    outcome: str


@dataclass
class CapturedUrlSet:
    """
    URLs observed on one page, per category, in network arrival order.

    Append-only for the lifetime of the page; selection and dedup happen when the set is read.
    """

    urls: Dict[CaptureCategory, List[str]] = field(
        default_factory=lambda: {category: [] for category in CaptureCategory}
    )

    def add(self, category: CaptureCategory, url: str) -> None:
        self.urls[category].append(url)

    def get(self, category: CaptureCategory) -> List[str]:
        return list(self.urls[category])

    def unique(self, category: CaptureCategory) -> List[str]:
        return list(dict.fromkeys(self.urls[category]))

    def summary(self) -> Dict[str, int]:
        return {category.value: len(urls) for category, urls in self.urls.items()}


def media_kind_for_url(url: str) -> MediaKind:
    return MediaKind.HLS if ".m3u8" in url.lower() else MediaKind.DIRECT
