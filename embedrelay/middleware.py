from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from embedrelay.configs import settings
from embedrelay.const import CORS_ALLOWED_HEADERS


class PreflightMiddleware(BaseHTTPMiddleware):
    """Answers every CORS preflight with an empty 200, whatever the CORS profile."""

    async def dispatch(self, request: Request, call_next):
        if request.method != "OPTIONS":
            return await call_next(request)

        headers = {
            "access-control-allow-methods": "GET, HEAD, OPTIONS",
            "access-control-allow-headers": ", ".join(CORS_ALLOWED_HEADERS),
        }
        if settings.cors_profile == "open":
            headers["access-control-allow-origin"] = "*"
        else:
            headers["vary"] = "Origin"
            origin = request.headers.get("origin")
            # Unlisted origins get no allow-origin header, so the browser refuses the real request
            if origin and origin in settings.cors_allowed_origins:
                headers["access-control-allow-origin"] = origin
                headers["access-control-allow-credentials"] = "true"
        return Response(status_code=200, headers=headers)
