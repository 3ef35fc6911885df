import pytest

from embedrelay.browser.session import BrowserSessionError
from embedrelay.extractors.base import (
    BasePageExtractor,
    InvalidContentIdentifier,
    NavigationTimeout,
    NoCandidateFound,
)
from embedrelay.extractors.providers import ProviderSource, build_extraction_request, sources_for
from embedrelay.extractors.resolver import MultiSourceResolver
from embedrelay.models import ContentKind, MediaKind, StreamCandidate

PROVIDERS = [
    ProviderSource("second", 20, "https://second.example/movie/{id}", "https://second.example/tv/{id}/{season}/{episode}"),
    ProviderSource("first", 10, "https://first.example/movie/{id}", "https://first.example/tv/{id}/{season}/{episode}"),
    ProviderSource("movies-only", 30, "https://movies.example/m/{id}", None),
]


class FakeExtractor(BasePageExtractor):
    """Answers per page URL prefix: an exception instance is raised, anything else returned."""

    def __init__(self, answers: dict):
        self.answers = answers
        self.visited = []

    async def extract(self, page_url):
        self.visited.append(page_url)
        for prefix, answer in self.answers.items():
            if page_url.startswith(prefix):
                if isinstance(answer, Exception):
                    raise answer
                return answer
        return None


def _hls(url="https://cdn.example/master.m3u8"):
    return StreamCandidate(url=url, media_kind=MediaKind.HLS, origin="network")


@pytest.mark.asyncio
async def test_timeout_on_first_provider_falls_through_to_second():
    extractor = FakeExtractor(
        {
            "https://first.example": NavigationTimeout("Timed out"),
            "https://second.example": _hls(),
        }
    )
    resolver = MultiSourceResolver(extractor, PROVIDERS)

    result = await resolver.resolve(build_extraction_request(content_kind="movie", tmdb_id="550"))

    assert extractor.visited == ["https://first.example/movie/550", "https://second.example/movie/550"]
    assert result.source_provider_name == "second"
    assert result.stream_url == "https://cdn.example/master.m3u8"
    assert result.media_kind is MediaKind.HLS
    assert result.content_kind is ContentKind.MOVIE
    assert result.page_url == "https://second.example/movie/550"


@pytest.mark.asyncio
async def test_exhaustion_lists_every_attempted_source_in_order():
    extractor = FakeExtractor({"https://second.example": RuntimeError("boom")})
    resolver = MultiSourceResolver(extractor, PROVIDERS)

    with pytest.raises(NoCandidateFound) as exc_info:
        await resolver.resolve(build_extraction_request(content_kind="movie", tmdb_id="550"))

    assert exc_info.value.attempted_sources == ["first", "second", "movies-only"]
    outcomes = [attempt.outcome for attempt in exc_info.value.attempts]
    assert outcomes[0] == "no stream found"
    assert outcomes[1].startswith("error:")


@pytest.mark.asyncio
async def test_providers_that_cannot_serve_tv_are_skipped():
    extractor = FakeExtractor({})
    resolver = MultiSourceResolver(extractor, PROVIDERS)

    with pytest.raises(NoCandidateFound) as exc_info:
        await resolver.resolve(build_extraction_request(content_kind="tv", tmdb_id="1399", season="1", episode="2"))

    assert extractor.visited == ["https://first.example/tv/1399/1/2", "https://second.example/tv/1399/1/2"]
    assert exc_info.value.attempted_sources == ["first", "second"]


@pytest.mark.asyncio
async def test_requested_page_is_tried_first_and_providers_follow():
    page_url = "https://elsewhere.example/embed/tv/1399/1/2"
    extractor = FakeExtractor({"https://first.example": _hls("https://cdn.example/ep.m3u8")})
    resolver = MultiSourceResolver(extractor, PROVIDERS)

    result = await resolver.resolve(build_extraction_request(url=page_url))

    assert extractor.visited == [page_url, "https://first.example/tv/1399/1/2"]
    assert result.source_provider_name == "first"
    assert result.content_kind is ContentKind.TV


@pytest.mark.asyncio
async def test_page_without_identity_has_no_fallbacks():
    page_url = "https://elsewhere.example/watch?v=abc"
    extractor = FakeExtractor({})
    resolver = MultiSourceResolver(extractor, PROVIDERS)

    with pytest.raises(NoCandidateFound) as exc_info:
        await resolver.resolve(build_extraction_request(url=page_url))

    assert extractor.visited == [page_url]
    assert exc_info.value.attempted_sources == ["requested"]


@pytest.mark.asyncio
async def test_stopped_browser_is_not_treated_as_a_provider_failure():
    extractor = FakeExtractor({"https://first.example": BrowserSessionError("Browser session is not running")})
    resolver = MultiSourceResolver(extractor, PROVIDERS)

    with pytest.raises(BrowserSessionError):
        await resolver.resolve(build_extraction_request(content_kind="movie", tmdb_id="550"))


def test_tv_page_url_without_episode_is_rejected_before_any_attempt():
    with pytest.raises(InvalidContentIdentifier):
        build_extraction_request(url="https://provider.example/embed/tv/1399/1")


@pytest.mark.parametrize(
    "params",
    [
        {},
        {"content_kind": "anime", "tmdb_id": "1"},
        {"content_kind": "movie"},
        {"content_kind": "tv", "tmdb_id": "1399", "season": "1"},
        {"content_kind": "tv", "tmdb_id": "1399", "season": "one", "episode": "2"},
        {"content_kind": "tv", "tmdb_id": "1399", "season": "-1", "episode": "2"},
        {"url": "not-a-url"},
    ],
)
def test_invalid_requests(params):
    with pytest.raises(InvalidContentIdentifier):
        build_extraction_request(**params)


def test_specials_season_zero_is_accepted():
    request = build_extraction_request(content_kind="tv", tmdb_id="1399", season="0", episode="1")
    assert (request.content.season, request.content.episode) == (0, 1)


def test_sources_are_ordered_by_priority():
    request = build_extraction_request(content_kind="movie", tmdb_id="550")
    assert [source.name for source in sources_for(request, PROVIDERS)] == ["first", "second", "movies-only"]
