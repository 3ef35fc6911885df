from embedrelay.extractors.scanner import DomSnapshot, FallbackScanner, normalize_candidate_url
from embedrelay.models import MediaKind

PAGE_URL = "https://provider.example/embed/movie/550"
AD_MARKERS = ["ads", "doubleclick", "analytics"]


def _scan(html: str):
    return FallbackScanner(ad_markers=AD_MARKERS).scan(DomSnapshot.from_html(html), PAGE_URL)


def test_protocol_relative_video_source_gets_https():
    candidate = _scan('<html><body><video src="//cdn.example/a.mp4"></video></body></html>')

    assert candidate.url == "https://cdn.example/a.mp4"
    assert candidate.media_kind is MediaKind.DIRECT
    assert candidate.origin == "video"


def test_ad_sources_are_skipped():
    html = """
    <video>
      <source src="https://doubleclick.example/preroll.mp4">
      <source src="https://cdn.example/feature.m3u8">
    </video>
    """
    candidate = _scan(html)
    assert candidate.url == "https://cdn.example/feature.m3u8"
    assert candidate.media_kind is MediaKind.HLS


def test_root_relative_iframe_uses_page_origin():
    candidate = _scan('<iframe data-src="/player/42"></iframe>')
    assert candidate.url == "https://provider.example/player/42"
    assert candidate.origin == "iframe"


def test_unusable_sources_fall_through_to_later_strategies():
    html = """
    <video src="blob:https://provider.example/123"></video>
    <script>var player = {file: "https:\\/\\/cdn.example\\/hls\\/master.m3u8"};</script>
    """
    candidate = _scan(html)
    assert candidate.url == "https://cdn.example/hls/master.m3u8"
    assert candidate.origin == "script file"


def test_sources_array_in_script():
    html = """
    <script>
      jwplayer("p").setup({sources: [{"file": "https://cdn.example/v/index.m3u8", "label": "auto"}]});
    </script>
    """
    candidate = _scan(html)
    assert candidate.url == "https://cdn.example/v/index.m3u8"
    assert candidate.origin == "json"


def test_bare_manifest_url_in_script():
    candidate = _scan("<script>load('x', \"https://cdn.example/live/stream.m3u8?t=1\")</script>")
    assert candidate.url == "https://cdn.example/live/stream.m3u8?t=1"


def test_broad_page_pattern_is_the_last_resort():
    html = '<div data-config="https://host.example/videos/abc123"></div>'
    candidate = _scan(html)
    assert candidate.url == "https://host.example/videos/abc123"
    assert candidate.origin == "page pattern"


def test_unclosed_markup_is_still_scanned():
    html = '<div class="player"><p>Loading<video src="https://cdn.example/b.m3u8"><source src="//ads.example/x.mp4">'
    snapshot = DomSnapshot.from_html(html)

    assert snapshot.video_sources == ["https://cdn.example/b.m3u8", "//ads.example/x.mp4"]
    assert _scan(html).url == "https://cdn.example/b.m3u8"


def test_nothing_found():
    assert _scan("<html><body><p>Nothing to see</p></body></html>") is None


def test_normalize_candidate_url():
    assert normalize_candidate_url("//cdn.example/a.mp4", PAGE_URL) == "https://cdn.example/a.mp4"
    assert normalize_candidate_url("/v/a.mp4", PAGE_URL) == "https://provider.example/v/a.mp4"
    assert normalize_candidate_url("http://cdn.example/a.mp4", PAGE_URL) == "http://cdn.example/a.mp4"
    assert normalize_candidate_url("about:blank", PAGE_URL) is None
