import pytest

from embedrelay.browser.capture import (
    GateDecision,
    NetworkCaptureListener,
    RequestInterceptor,
    ResourceGate,
    classify_url,
    select_captured_stream,
)
from embedrelay.models import CaptureCategory, CapturedUrlSet, MediaKind


MARKERS = ["MTA4MA==", "NzIw"]


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://cdn.example/master.m3u8", CaptureCategory.HLS_MANIFEST),
        ("https://cdn.example/hls/index.M3U8?token=1", CaptureCategory.HLS_MANIFEST),
        ("https://cdn.example/movie.mp4", CaptureCategory.DIRECT_VIDEO),
        ("https://cdn.example/clip.webm?x=1", CaptureCategory.DIRECT_VIDEO),
        ("https://cdn.example/app.js", None),
    ],
)
def test_classify_url(url, expected):
    assert classify_url(url) == expected


def test_listener_appends_in_arrival_order_including_duplicates():
    captured = CapturedUrlSet()
    listener = NetworkCaptureListener(captured)

    listener.on_request("https://a.example/one.m3u8", "xhr")
    listener.on_request("https://a.example/script.js", "script")
    listener.on_request("https://a.example/two.m3u8", "fetch")
    listener.on_request("https://a.example/one.m3u8", "xhr")

    assert captured.get(CaptureCategory.HLS_MANIFEST) == [
        "https://a.example/one.m3u8",
        "https://a.example/two.m3u8",
        "https://a.example/one.m3u8",
    ]
    assert captured.unique(CaptureCategory.HLS_MANIFEST) == [
        "https://a.example/one.m3u8",
        "https://a.example/two.m3u8",
    ]


def test_listener_records_embeds_media_and_playlist_responses():
    captured = CapturedUrlSet()
    listener = NetworkCaptureListener(captured)

    listener.on_request("https://player.example/embed/42", "document", is_subframe_document=True)
    listener.on_request("https://cdn.example/stream", "media")
    listener.on_response("https://cdn.example/playlist?id=7", "application/vnd.apple.mpegurl")
    listener.on_response("https://cdn.example/data.json", "application/json")

    assert captured.get(CaptureCategory.IFRAME_EMBED) == ["https://player.example/embed/42"]
    assert captured.get(CaptureCategory.OTHER) == ["https://cdn.example/stream"]
    assert captured.get(CaptureCategory.HLS_MANIFEST) == ["https://cdn.example/playlist?id=7"]


def test_gate_blocks_by_type_and_marker_but_never_the_main_document():
    gate = ResourceGate(["image", "stylesheet", "font"], ["ads", "analytics", "tracking"])

    assert gate.decide("https://x.example/logo.png", "image") is GateDecision.BLOCK
    assert gate.decide("https://x.example/analytics.js", "script") is GateDecision.BLOCK
    assert gate.decide("https://x.example/player.js", "script") is GateDecision.ALLOW
    assert gate.decide("https://ads.example/page", "document", is_main_document=True) is GateDecision.ALLOW


def test_preferred_marker_wins_regardless_of_order():
    decoy = "https://cdn.example/decoy/index.m3u8"
    preferred = "https://cdn.example/NzIw/index.m3u8"

    for order in ([decoy, preferred], [preferred, decoy]):
        captured = CapturedUrlSet()
        for url in order:
            captured.add(CaptureCategory.HLS_MANIFEST, url)
        candidate = select_captured_stream(captured, MARKERS)
        assert candidate.url == preferred
        assert candidate.media_kind is MediaKind.HLS


def test_first_manifest_is_used_without_markers():
    captured = CapturedUrlSet()
    captured.add(CaptureCategory.HLS_MANIFEST, "https://cdn.example/a.m3u8")
    captured.add(CaptureCategory.HLS_MANIFEST, "https://cdn.example/b.m3u8")

    assert select_captured_stream(captured, MARKERS).url == "https://cdn.example/a.m3u8"


def test_hls_beats_direct_video_and_direct_video_is_the_fallback():
    captured = CapturedUrlSet()
    captured.add(CaptureCategory.DIRECT_VIDEO, "https://cdn.example/movie.mp4")
    assert select_captured_stream(captured, MARKERS).media_kind is MediaKind.DIRECT

    captured.add(CaptureCategory.HLS_MANIFEST, "https://cdn.example/a.m3u8")
    candidate = select_captured_stream(captured, MARKERS)
    assert candidate.url == "https://cdn.example/a.m3u8"
    assert candidate.origin == "network"


def test_nothing_captured_selects_nothing():
    captured = CapturedUrlSet()
    captured.add(CaptureCategory.IFRAME_EMBED, "https://player.example/embed/1")
    assert select_captured_stream(captured, MARKERS) is None


class FakeFrame:
    def __init__(self, parent_frame=None):
        self.parent_frame = parent_frame


class FakeRequest:
    def __init__(self, url, resource_type, frame=None, navigation=False):
        self.url = url
        self.resource_type = resource_type
        self.frame = frame or FakeFrame()
        self._navigation = navigation

    def is_navigation_request(self):
        return self._navigation


class FakeRoute:
    def __init__(self, request):
        self.request = request
        self.action = None

    async def abort(self):
        self.action = "abort"

    async def continue_(self):
        self.action = "continue"


@pytest.mark.asyncio
async def test_interceptor_captures_before_gating():
    captured = CapturedUrlSet()
    gate = ResourceGate(["image"], ["ads"])
    interceptor = RequestInterceptor(NetworkCaptureListener(captured), gate)

    blocked_manifest = FakeRoute(FakeRequest("https://ads.example/preroll.m3u8", "xhr"))
    await interceptor.handle_route(blocked_manifest)
    main_document = FakeRoute(
        FakeRequest("https://ads-heavy.example/embed/1", "document", navigation=True)
    )
    await interceptor.handle_route(main_document)
    embed = FakeRoute(FakeRequest("https://player.example/e/1", "document", frame=FakeFrame(FakeFrame())))
    await interceptor.handle_route(embed)

    assert blocked_manifest.action == "abort"
    assert main_document.action == "continue"
    assert embed.action == "continue"
    assert captured.get(CaptureCategory.HLS_MANIFEST) == ["https://ads.example/preroll.m3u8"]
    assert captured.get(CaptureCategory.IFRAME_EMBED) == ["https://player.example/e/1"]
