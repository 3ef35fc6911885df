import logging
from urllib.parse import urlparse

import httpx
from fastapi import Request, Response, HTTPException
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from .configs import settings
from .const import SUPPORTED_RESPONSE_HEADERS, HLS_CONTENT_TYPE, HLS_EXTENSIONS, CORS_EXPOSED_HEADERS
from .utils.http_utils import (
    Streamer,
    DownloadError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
    EnhancedStreamingResponse,
    ProxyForwardContext,
    create_httpx_client,
)
from .utils.m3u8_processor import M3U8Processor

logger = logging.getLogger(__name__)


async def setup_client_and_streamer() -> tuple[httpx.AsyncClient, Streamer]:
    """
    Set up an HTTP client and a streamer.

    Returns:
        tuple: An httpx.AsyncClient instance and a Streamer instance.
    """
    client = create_httpx_client()
    return client, Streamer(client)


def handle_exceptions(exception: Exception, target_url: str) -> Response:
    """
    Turn a relay failure into a gateway error response.

    Args:
        exception (Exception): The exception that was raised.
        target_url (str): The URL that was being relayed.

    Returns:
        Response: A 502/504 JSON response telling unreachable and rejecting origins apart.
    """
    if isinstance(exception, UpstreamRejectedError):
        logger.error(f"Upstream rejected {target_url}: HTTP {exception.upstream_status}")
        content = {
            "error": "upstream_rejected",
            "details": exception.message,
            "upstreamStatus": exception.upstream_status,
            "url": target_url,
        }
    elif isinstance(exception, UpstreamTimeoutError):
        content = {"error": "upstream_timeout", "details": exception.message, "url": target_url}
    elif isinstance(exception, DownloadError):
        logger.error(f"Could not reach upstream for {target_url}: {exception}")
        content = {"error": "upstream_unreachable", "details": exception.message, "url": target_url}
    else:
        logger.exception(f"Internal error while relaying {target_url}: {exception}")
        return JSONResponse(
            status_code=502,
            content={"error": "relay_failed", "details": str(exception), "url": target_url},
            headers=cors_response_headers(),
        )
    return JSONResponse(status_code=exception.status_code, content=content, headers=cors_response_headers())


def cors_response_headers() -> dict:
    """Permissive cross-origin headers for relayed content under the open CORS profile."""
    if settings.cors_profile != "open":
        return {}
    return {
        "access-control-allow-origin": "*",
        "access-control-expose-headers": ", ".join(CORS_EXPOSED_HEADERS),
    }


def is_playlist_url(url: str) -> bool:
    return urlparse(url).path.lower().endswith(HLS_EXTENSIONS)


def is_playlist_content_type(content_type: str) -> bool:
    return "mpegurl" in (content_type or "").lower()


def prepare_response_headers(original_headers: httpx.Headers) -> dict:
    """
    Prepare response headers for the relay response.

    Content type, length, accept-ranges and content-range are passed through verbatim.

    Args:
        original_headers (httpx.Headers): The original headers from the upstream response.

    Returns:
        dict: The prepared headers for the relay response.
    """
    response_headers = {k: v for k, v in original_headers.multi_items() if k in SUPPORTED_RESPONSE_HEADERS}
    if "content-encoding" in original_headers:
        # Bodies are relayed raw, still encoded
        response_headers["content-encoding"] = original_headers["content-encoding"]
    response_headers.setdefault("content-type", "application/octet-stream")
    response_headers.update(cors_response_headers())
    return response_headers


async def handle_proxy_request(method: str, request: Request, forward_context: ProxyForwardContext) -> Response:
    """
    Relay one target URL: playlists are rewritten, everything else is streamed through.

    Args:
        method (str): The HTTP method, GET or HEAD.
        request (Request): The incoming FastAPI request object.
        forward_context (ProxyForwardContext): Target URL, referer and header overrides.

    Returns:
        Response: Either a rewritten playlist or a streaming response.
    """
    if forward_context.range_header and "nan" in forward_context.range_header.casefold():
        # Players occasionally send "bytes=NaN-NaN"
        raise HTTPException(status_code=416, detail="Invalid Range Header")

    logger.info(f"Relaying {forward_context.target_url}")
    if is_playlist_url(forward_context.target_url):
        return await fetch_and_process_m3u8(request, forward_context)
    return await handle_stream_request(method, request, forward_context)


async def handle_stream_request(method: str, request: Request, forward_context: ProxyForwardContext) -> Response:
    """
    Stream a binary target through, preserving status, byte ranges and content headers.

    A target that turns out to be a playlist by content type is rewritten instead.

    Args:
        method (str): The HTTP method (e.g., 'GET' or 'HEAD').
        request (Request): The incoming FastAPI request object.
        forward_context (ProxyForwardContext): Target URL, referer and header overrides.

    Returns:
        Union[Response, EnhancedStreamingResponse]: Either a HEAD response with headers or a streaming response.
    """
    _, streamer = await setup_client_and_streamer()

    try:
        await streamer.create_streaming_response(
            forward_context.target_url, forward_context.upstream_headers(), method=method
        )
        upstream_content_type = streamer.response.headers.get("content-type", "")
        if method == "GET" and is_playlist_content_type(upstream_content_type):
            await streamer.response.aread()
            try:
                return build_playlist_response(request, forward_context, streamer.response)
            finally:
                await streamer.close()

        response_headers = prepare_response_headers(streamer.response.headers)

        if method == "HEAD":
            await streamer.close()
            return Response(headers=response_headers, status_code=streamer.response.status_code)

        return EnhancedStreamingResponse(
            streamer.stream_content(),
            status_code=streamer.response.status_code,
            headers=response_headers,
            background=BackgroundTask(streamer.close),
        )
    except Exception as e:
        await streamer.close()
        return handle_exceptions(e, forward_context.target_url)


async def fetch_and_process_m3u8(request: Request, forward_context: ProxyForwardContext) -> Response:
    """
    Fetches a playlist as text and rewrites every segment reference to point back through the relay.

    Args:
        request (Request): The incoming HTTP request.
        forward_context (ProxyForwardContext): Target URL, referer and header overrides.

    Returns:
        Response: The HTTP response with the processed m3u8 playlist.
    """
    _, streamer = await setup_client_and_streamer()
    try:
        await streamer.get_text(forward_context.target_url, forward_context.upstream_headers())
        return build_playlist_response(request, forward_context, streamer.response)
    except Exception as e:
        return handle_exceptions(e, forward_context.target_url)
    finally:
        await streamer.close()


def build_playlist_response(
    request: Request, forward_context: ProxyForwardContext, upstream_response: httpx.Response
) -> Response:
    """
    Rewrite a fully read upstream playlist response.

    Args:
        request (Request): The incoming HTTP request.
        forward_context (ProxyForwardContext): Target URL, referer and header overrides.
        upstream_response (httpx.Response): The read upstream response.

    Returns:
        Response: The rewritten playlist.
    """
    # Relative lines resolve against where the playlist really came from, redirects included.
    playlist_url = str(upstream_response.url)
    processor = M3U8Processor(request, forward_context)
    processed = processor.process_m3u8(upstream_response.text, playlist_url)
    response_headers = {
        "content-disposition": "inline",
        "cache-control": "no-cache",
    }
    response_headers.update(cors_response_headers())
    return Response(content=processed, media_type=HLS_CONTENT_TYPE, headers=response_headers)
