from typing import Annotated

from fastapi import Request, Depends, APIRouter

from embedrelay.handlers import handle_proxy_request
from embedrelay.utils.http_utils import ProxyForwardContext, get_proxy_forward_context

proxy_router = APIRouter()


@proxy_router.head("/proxy")
@proxy_router.get("/proxy", name="stream_proxy")
async def stream_proxy(
    request: Request,
    forward_context: Annotated[ProxyForwardContext, Depends(get_proxy_forward_context)],
):
    """
    Relay a media URL: playlists come back with every segment rewritten through the relay, anything else
    is streamed through with its status, byte range and content headers.

    Args:
        request (Request): The incoming HTTP request.
        forward_context (ProxyForwardContext): Target URL, referer and header overrides.

    Returns:
        Response: The HTTP response with the relayed content.
    """
    return await handle_proxy_request(request.method, request, forward_context)


@proxy_router.head("/api/stream", include_in_schema=False)
@proxy_router.get("/api/stream", include_in_schema=False)
async def stream_proxy_alias(
    request: Request,
    forward_context: Annotated[ProxyForwardContext, Depends(get_proxy_forward_context)],
):
    return await handle_proxy_request(request.method, request, forward_context)
