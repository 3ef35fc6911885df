import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence
from urllib.parse import urlparse

from embedrelay.configs import ProviderConfig, settings
from embedrelay.extractors.base import InvalidContentIdentifier
from embedrelay.models import ContentIdentifier, ContentKind, ExtractionRequest

logger = logging.getLogger(__name__)

CONTENT_PATH_PATTERN = re.compile(r"/(movie|tv)/([^/?#&]+)(?:/(\d+))?(?:/(\d+))?")


@dataclass(frozen=True)
class ProviderSource:
    """An upstream site offering a player page per movie or TV episode."""

    name: str
    priority: int
    movie_url_template: Optional[str] = None
    tv_url_template: Optional[str] = None

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "ProviderSource":
        return cls(config.name, config.priority, config.movie_url_template, config.tv_url_template)

    def movie_url(self, tmdb_id: str) -> Optional[str]:
        if not self.movie_url_template:
            return None
        return self.movie_url_template.format(id=tmdb_id)

    def tv_url(self, tmdb_id: str, season: int, episode: int) -> Optional[str]:
        if not self.tv_url_template:
            return None
        return self.tv_url_template.format(id=tmdb_id, season=season, episode=episode)

    def build_url(self, request: ExtractionRequest) -> Optional[str]:
        """Page URL of this provider for the request, or None when it cannot serve it."""
        content = request.content
        if content is None:
            return None
        if content.kind is ContentKind.TV:
            if content.season is None or content.episode is None:
                return None
            return self.tv_url(content.tmdb_id, content.season, content.episode)
        return self.movie_url(content.tmdb_id)


@dataclass(frozen=True)
class RequestedPageSource(ProviderSource):
    """The page the client named explicitly; always tried before the configured providers."""

    name: str = "requested"
    priority: int = -1

    def build_url(self, request: ExtractionRequest) -> Optional[str]:
        return request.source_page_url


def configured_providers(configs: Optional[Sequence[ProviderConfig]] = None) -> List[ProviderSource]:
    """The configured providers in ascending priority order."""
    configs = settings.providers if configs is None else configs
    return sorted((ProviderSource.from_config(config) for config in configs), key=lambda p: p.priority)


def sources_for(request: ExtractionRequest, providers: Optional[Sequence[ProviderSource]] = None) -> List[ProviderSource]:
    """
    The ordered sources to try for a request.

    A named page comes first; the configured providers follow whenever the content identity is known.
    """
    providers = configured_providers() if providers is None else sorted(providers, key=lambda p: p.priority)
    sources: List[ProviderSource] = []
    if request.source_page_url:
        sources.append(RequestedPageSource())
    if request.content is not None:
        sources.extend(providers)
    return sources


def _parse_non_negative_int(value, field_name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidContentIdentifier(f"{field_name} must be an integer, got {value!r}")
    if number < 0:
        raise InvalidContentIdentifier(f"{field_name} must not be negative")
    return number


def content_from_page_url(url: str) -> Optional[ContentIdentifier]:
    """
    Read the content identity out of a provider-style page URL.

    ``/movie/<id>`` and ``/tv/<id>/<season>/<episode>`` are understood; any other URL has no known
    identity.

    Raises:
        InvalidContentIdentifier: If the URL is a TV page without both season and episode.
    """
    path = urlparse(url).path
    match = CONTENT_PATH_PATTERN.search(path)
    if match is None:
        if "/tv/" in path or path.endswith("/tv"):
            raise InvalidContentIdentifier("TV page URL must include an id, a season and an episode")
        return None

    kind, tmdb_id, season, episode = match.groups()
    if kind == ContentKind.TV.value:
        if season is None or episode is None:
            raise InvalidContentIdentifier("TV page URL must include both a season and an episode")
        return ContentIdentifier(ContentKind.TV, tmdb_id, int(season), int(episode))
    return ContentIdentifier(ContentKind.MOVIE, tmdb_id)


def build_extraction_request(
    url: Optional[str] = None,
    content_kind: Optional[str] = None,
    tmdb_id: Optional[str] = None,
    season: Optional[str] = None,
    episode: Optional[str] = None,
) -> ExtractionRequest:
    """
    Validate the extraction query parameters into an ExtractionRequest.

    Either a page ``url`` or a ``content_kind`` with an ``id`` (plus ``season`` and ``episode`` for TV)
    is required.

    Raises:
        InvalidContentIdentifier: If the parameters are missing or do not describe a movie or an episode.
    """
    if url:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidContentIdentifier(f"url must be an absolute http(s) URL, got {url!r}")
        return ExtractionRequest(source_page_url=url, content=content_from_page_url(url))

    if not content_kind:
        raise InvalidContentIdentifier("Either url or contentKind with id is required")
    try:
        kind = ContentKind(content_kind.lower())
    except ValueError:
        raise InvalidContentIdentifier(f"contentKind must be 'movie' or 'tv', got {content_kind!r}")
    if not tmdb_id:
        raise InvalidContentIdentifier("id is required")

    if kind is ContentKind.TV:
        if season is None or episode is None:
            raise InvalidContentIdentifier("season and episode are required for TV content")
        return ExtractionRequest(
            content=ContentIdentifier(
                kind,
                tmdb_id,
                _parse_non_negative_int(season, "season"),
                _parse_non_negative_int(episode, "episode"),
            )
        )
    return ExtractionRequest(content=ContentIdentifier(kind, tmdb_id))
