import json
import logging
import typing
from dataclasses import dataclass, field
from functools import partial
from urllib import parse
from urllib.parse import urlencode

import anyio
import h11
import httpx
from fastapi import Query, Response
from starlette.background import BackgroundTask
from starlette.concurrency import iterate_in_threadpool
from starlette.requests import Request
from starlette.types import Receive, Send, Scope
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from tqdm.asyncio import tqdm as tqdm_asyncio

from embedrelay.configs import settings
from embedrelay.const import SUPPORTED_REQUEST_HEADERS

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class UpstreamUnreachableError(DownloadError):
    """The origin could not be reached at all (DNS, connect, TLS, protocol)."""

    def __init__(self, message):
        super().__init__(502, message)


class UpstreamTimeoutError(DownloadError):
    def __init__(self, message):
        super().__init__(504, message)


class UpstreamRejectedError(DownloadError):
    """The origin answered with a non-success status."""

    def __init__(self, upstream_status: int, message):
        self.upstream_status = upstream_status
        super().__init__(502, message)


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient using the configured transport mounts, timeout and redirect limit.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: Configured client.
    """
    mounts = settings.transport_config.get_mounts()
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    kwargs.setdefault("max_redirects", settings.transport_config.max_redirects)
    return httpx.AsyncClient(mounts=mounts, follow_redirects=follow_redirects, **kwargs)


def translate_httpx_error(url: str, exc: Exception) -> Exception:
    """Map an httpx failure onto the relay's error taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        logger.warning(f"Timeout while requesting {url}")
        return UpstreamTimeoutError(f"Timeout while requesting {url}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        logger.error(f"HTTP error {status} while requesting {url}")
        return UpstreamRejectedError(status, f"Upstream rejected the request with HTTP {status}")
    if isinstance(exc, httpx.RequestError):
        logger.error(f"Could not reach {url}: {exc}")
        return UpstreamUnreachableError(f"Could not reach upstream: {exc}")
    return exc


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=4),
    retry=retry_if_exception_type((UpstreamUnreachableError, UpstreamTimeoutError)),
    reraise=True,
)
async def fetch_with_retry(client, method, url, headers, **kwargs):
    """
    Fetch a URL, retrying transient network failures. Rejections by the origin are not retried.

    Args:
        client (httpx.AsyncClient): HTTP client to use for the request.
        method (str): HTTP method (e.g., GET, POST).
        url (str): Target URL.
        headers (dict): Request headers.
        **kwargs: Additional request arguments.

    Returns:
        httpx.Response: HTTP response.
    """
    try:
        response = await client.request(method, url, headers=headers, **kwargs)
        response.raise_for_status()
        return response
    except httpx.HTTPError as e:
        raise translate_httpx_error(url, e) from e


async def request_with_retry(method: str, url: str, headers: dict, **kwargs) -> httpx.Response:
    """
    Send an HTTP request with retry logic.

    Args:
        method (str): HTTP method.
        url (str): Target URL.
        headers (dict): Request headers.
        **kwargs: Additional request arguments.

    Returns:
        httpx.Response: HTTP response.

    Raises:
        DownloadError: If the request fails after retries.
    """
    async with create_httpx_client() as client:
        try:
            return await fetch_with_retry(client, method, url, headers, **kwargs)
        except DownloadError as e:
            logger.error(f"Failed to perform request: {e}")
            raise


class Streamer:
    def __init__(self, client):
        """
        Initialize a Streamer with a configured HTTP client.

        Args:
            client (httpx.AsyncClient): The HTTP client to use for streaming.
        """
        self.client = client
        self.response = None
        self.progress_bar = None
        self.bytes_transferred = 0
        self.start_byte = 0
        self.end_byte = 0
        self.total_size = 0

    async def create_streaming_response(self, url: str, headers: dict, method: str = "GET"):
        """
        Send a streaming request and keep the open response. No retry: a failed relay is terminal.

        Args:
            url (str): Source URL for the streaming content.
            headers (dict): Request headers.
            method (str): HTTP method, GET or HEAD.
        """
        try:
            request = self.client.build_request(method, url, headers=headers)
            self.response = await self.client.send(request, stream=True)
            self.response.raise_for_status()
        except httpx.HTTPError as e:
            raise translate_httpx_error(url, e) from e

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream the raw response body as an async byte generator.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        try:
            self.parse_content_range()

            if settings.enable_streaming_progress:
                with tqdm_asyncio(
                    total=self.total_size,
                    initial=self.start_byte,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc="Streaming",
                    ncols=100,
                    mininterval=1,
                ) as self.progress_bar:
                    async for chunk in self.response.aiter_raw():
                        yield chunk
                        chunk_size = len(chunk)
                        self.bytes_transferred += chunk_size
                        self.progress_bar.set_postfix_str(
                            f"📥 : {self.format_bytes(self.bytes_transferred)}", refresh=False
                        )
                        self.progress_bar.update(chunk_size)
            else:
                async for chunk in self.response.aiter_raw():
                    yield chunk
                    self.bytes_transferred += len(chunk)

        except httpx.TimeoutException:
            logger.warning("Timeout while streaming")
            raise UpstreamTimeoutError("Timeout while streaming")
        except httpx.RemoteProtocolError as e:
            if self.bytes_transferred > 0:
                logger.warning(
                    f"Upstream closed the connection after {self.bytes_transferred} bytes: {e}"
                )
                return
            raise UpstreamUnreachableError(f"Upstream closed the connection without sending data: {e}")
        except httpx.TransportError as e:
            logger.warning(f"Upstream connection failed after {self.bytes_transferred} bytes: {e}")
            raise UpstreamUnreachableError(f"Upstream connection failed while streaming: {e}")
        except GeneratorExit:
            logger.info("Streaming session stopped by the client")

    @staticmethod
    def format_bytes(size) -> str:
        power = 2**10
        n = 0
        units = {0: "B", 1: "KB", 2: "MB", 3: "GB", 4: "TB"}
        while size > power:
            size /= power
            n += 1
        return f"{size:.2f} {units[n]}"

    def parse_content_range(self):
        """
        Parse Content-Range/Content-Length headers to compute byte positions and total size.
        """
        content_range = self.response.headers.get("Content-Range", "")
        try:
            if content_range:
                range_info = content_range.split()[-1]
                self.start_byte, self.end_byte, self.total_size = map(
                    int, range_info.replace("/", "-").split("-")
                )
            else:
                self.start_byte = 0
                self.total_size = int(self.response.headers.get("Content-Length", 0))
                self.end_byte = self.total_size - 1 if self.total_size > 0 else 0
        except ValueError:
            # "bytes 0-99/*" and friends: progress only, never fatal
            self.start_byte = self.end_byte = self.total_size = 0

    async def get_text(self, url: str, headers: dict) -> str:
        """
        Send a GET request and return the decoded response text.

        Args:
            url (str): Target URL.
            headers (dict): Request headers.

        Returns:
            str: Response text.
        """
        try:
            self.response = await self.client.get(url, headers=headers)
            self.response.raise_for_status()
        except httpx.HTTPError as e:
            raise translate_httpx_error(url, e) from e
        return self.response.text

    async def close(self):
        """
        Close HTTP response and client resources.
        """
        if self.response:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
        await self.client.aclose()


def get_original_scheme(request: Request) -> str:
    """
    Determine the original scheme (http or https) of the incoming request.

    Args:
        request (Request): Incoming HTTP request.

    Returns:
        str: 'http' or 'https'
    """
    forwarded_proto = request.headers.get("X-Forwarded-Proto")
    if forwarded_proto:
        return forwarded_proto

    if (
        request.url.scheme == "https"
        or request.headers.get("X-Forwarded-Ssl") == "on"
        or request.headers.get("X-Forwarded-Protocol") == "https"
        or request.headers.get("X-Url-Scheme") == "https"
    ):
        return "https"

    return "http"


def url_origin(url: str) -> str:
    parsed = parse.urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def filter_overridable_headers(headers: typing.Mapping[str, typing.Any]) -> dict:
    """Keep only the headers a client is allowed to override, lower-cased."""
    allowed = {name.lower() for name in settings.proxy_overridable_headers}
    return {k.lower(): str(v) for k, v in headers.items() if k.lower() in allowed and v is not None}


def parse_headers_blob(blob: typing.Optional[str]) -> dict:
    """
    Decode a ``headers=`` JSON object. Malformed input is ignored rather than failing the request.
    """
    if not blob:
        return {}
    try:
        decoded = json.loads(blob)
    except ValueError:
        logger.info("Could not parse custom headers, using defaults")
        return {}
    if not isinstance(decoded, dict):
        logger.info("Custom headers are not a JSON object, using defaults")
        return {}
    return filter_overridable_headers(decoded)


def headers_embedded_in_url(url: str) -> dict:
    """Pick up a ``headers=`` JSON blob that was embedded in the target URL's own query string."""
    values = parse.parse_qs(parse.urlparse(url).query).get("headers")
    return parse_headers_blob(values[0]) if values else {}


@dataclass
class ProxyForwardContext:
    target_url: str
    referer_override: typing.Optional[str] = None
    range_header: typing.Optional[str] = None
    if_range_header: typing.Optional[str] = None
    header_overrides: dict = field(default_factory=dict)

    @property
    def effective_referer(self) -> str:
        return self.referer_override or f"{url_origin(self.target_url)}/"

    def upstream_headers(self) -> dict:
        """Headers sent to the origin: synthesized defaults, then client overrides, then the inbound range."""
        headers = {
            "user-agent": settings.user_agent,
            "accept": "*/*",
            "accept-encoding": "identity",
            "referer": self.effective_referer,
        }
        headers.update(self.header_overrides)
        if self.range_header:
            headers["range"] = self.range_header
        if self.if_range_header:
            headers["if-range"] = self.if_range_header
        return headers

    def carried_query_params(self) -> dict:
        """Override parameters that must follow every rewritten segment URL."""
        return {f"h_{k}": v for k, v in self.header_overrides.items() if k != "referer"}


def get_proxy_forward_context(
    request: Request,
    url: typing.Annotated[str, Query(description="The URL to relay.")],
    referer: typing.Annotated[typing.Optional[str], Query(description="Referer sent to the origin.")] = None,
    headers: typing.Annotated[
        typing.Optional[str], Query(description="JSON object of request headers to override.")
    ] = None,
) -> ProxyForwardContext:
    """
    Build the forward context of a relay request from its query parameters and inbound headers.

    Header overrides are taken, lowest priority first, from a ``headers=`` blob embedded in the target
    URL, the ``headers=`` query parameter and ``h_<name>`` query parameters.
    """
    overrides = headers_embedded_in_url(url)
    overrides.update(parse_headers_blob(headers))
    overrides.update(
        filter_overridable_headers(
            {k[2:]: v for k, v in request.query_params.items() if k.startswith("h_")}
        )
    )
    inbound = {k: v for k, v in request.headers.items() if k in SUPPORTED_REQUEST_HEADERS}
    return ProxyForwardContext(
        target_url=url,
        referer_override=referer or overrides.get("referer"),
        range_header=inbound.get("range"),
        if_range_header=inbound.get("if-range"),
        header_overrides=overrides,
    )


def encode_proxy_url(
    proxy_base_url: str,
    destination_url: str,
    referer: typing.Optional[str] = None,
    query_params: typing.Optional[dict] = None,
) -> str:
    """
    Wrap a destination URL into a relay URL: ``<proxy_base_url>?url=...&referer=...``.

    Args:
        proxy_base_url (str): Absolute URL of the relay endpoint.
        destination_url (str): The URL to relay.
        referer (str, optional): Referer the relay should present to the origin.
        query_params (dict, optional): Additional query parameters carried along.

    Returns:
        str: Encoded relay URL.
    """
    params = {"url": destination_url}
    if referer:
        params["referer"] = referer
    if query_params:
        params.update(query_params)
    return f"{proxy_base_url.rstrip('/')}?{urlencode(params)}"


class EnhancedStreamingResponse(Response):
    body_iterator: typing.AsyncIterable[typing.Any]

    def __init__(
        self,
        content: typing.Union[typing.AsyncIterable[typing.Any], typing.Iterable[typing.Any]],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        if isinstance(content, typing.AsyncIterable):
            self.body_iterator = content
        else:
            self.body_iterator = iterate_in_threadpool(content)
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.actual_content_length = 0

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        """
        Listen for client disconnect events to stop streaming gracefully.
        """
        try:
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    logger.debug("Client disconnected")
                    break
        except Exception as e:
            logger.error(f"Error in listen_for_disconnect: {str(e)}")

    async def stream_response(self, send: Send) -> None:
        """
        Stream the response body in chunks, passing upstream headers through unchanged.
        """
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )

        data_sent = False
        try:
            async for chunk in self.body_iterator:
                if not isinstance(chunk, (bytes, memoryview)):
                    chunk = chunk.encode(self.charset)
                try:
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
                    data_sent = True
                    self.actual_content_length += len(chunk)
                except (ConnectionResetError, anyio.BrokenResourceError):
                    logger.info("Client disconnected during streaming")
                    return

            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except DownloadError as e:
            # Headers are already out; the status can no longer change, so the connection is dropped.
            logger.error(f"Upstream failed mid-stream after {self.actual_content_length} bytes: {e}")
        except (httpx.RemoteProtocolError, h11.LocalProtocolError) as e:
            if not data_sent:
                logger.error(f"Protocol error before any data was streamed: {e}")
                raise
            logger.warning(
                f"Protocol error after partial streaming ({self.actual_content_length} bytes transferred): {e}"
            )
        except Exception as e:
            logger.exception(f"Error in stream_response: {str(e)}")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently.
        """
        try:
            async with anyio.create_task_group() as task_group:
                streaming_completed = False
                stream_func = partial(self.stream_response, send)
                listen_func = partial(self.listen_for_disconnect, receive)

                async def wrap(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                    try:
                        await func()
                        if func == stream_func:
                            nonlocal streaming_completed
                            streaming_completed = True
                    except Exception as e:
                        if isinstance(e, (httpx.RemoteProtocolError, h11.LocalProtocolError)):
                            logger.warning(f"Protocol error during streaming: {e}")
                        elif not isinstance(e, anyio.get_cancelled_exc_class()):
                            logger.exception("Error in streaming task")
                            raise
                    finally:
                        if func == listen_func or streaming_completed:
                            task_group.cancel_scope.cancel()

                task_group.start_soon(wrap, stream_func)
                await wrap(listen_func)
        finally:
            # Upstream resources are released on every exit path
            if self.background is not None:
                with anyio.CancelScope(shield=True):
                    await self.background()
