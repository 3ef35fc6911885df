SUPPORTED_RESPONSE_HEADERS = [
    "accept-ranges",
    "content-type",
    "content-length",
    "content-range",
    "last-modified",
    "etag",
    "cache-control",
    "expires",
]

# Inbound headers relayed upstream as-is; everything else is synthesized or overridden explicitly.
SUPPORTED_REQUEST_HEADERS = [
    "range",
    "if-range",
]

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"

CORS_EXPOSED_HEADERS = ["Content-Length", "Content-Range", "Accept-Ranges"]

CORS_ALLOWED_HEADERS = ["Origin", "X-Requested-With", "Content-Type", "Accept", "Range"]

HLS_EXTENSIONS = (".m3u8",)

DIRECT_VIDEO_EXTENSIONS = (".mp4", ".webm", ".mkv")
