import logging
from typing import Any, Dict, Optional

from embedrelay.configs import settings
from embedrelay.utils.http_utils import DownloadError, request_with_retry

logger = logging.getLogger(__name__)


class MetadataError(Exception):
    """Base exception for metadata lookups."""

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class MetadataNotConfigured(MetadataError):
    pass


class TMDBClient:
    """Thin client for the TMDB v3 API; returns the provider's JSON untouched."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, language: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.tmdb_api_key
        self.base_url = (base_url or settings.tmdb_base_url).rstrip("/")
        self.language = language or settings.tmdb_language

    def ensure_configured(self):
        if not self.api_key:
            raise MetadataNotConfigured(
                "TMDB API key not configured", "Please set TMDB_API_KEY environment variable"
            )

    async def request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Call a TMDB endpoint.

        Args:
            endpoint (str): Path below the API base, e.g. ``/search/movie``.
            params (dict, optional): Extra query parameters.

        Returns:
            dict: The decoded JSON response.

        Raises:
            MetadataNotConfigured: If no API key is configured.
            MetadataError: If the request fails.
        """
        self.ensure_configured()
        query = {"api_key": self.api_key, "language": self.language}
        query.update({k: v for k, v in (params or {}).items() if v is not None})

        try:
            response = await request_with_retry("GET", f"{self.base_url}{endpoint}", {}, params=query)
        except DownloadError as e:
            details = e.message
            cause = e.__cause__
            upstream = getattr(cause, "response", None)
            if upstream is not None:
                try:
                    details = upstream.json().get("status_message", details)
                except ValueError:
                    pass
            logger.error(f"TMDB API Error for {endpoint}: {details}")
            raise MetadataError(f"TMDB request to {endpoint} failed", details) from e
        return response.json()

    async def search(self, kind: str, query: str, page: int = 1) -> Any:
        return (await self.request(f"/search/{kind}", {"query": query, "page": page})).get("results", [])

    async def details(self, kind: str, tmdb_id: str) -> Dict[str, Any]:
        return await self.request(f"/{kind}/{tmdb_id}")

    async def recommendations(self, kind: str, tmdb_id: str) -> Any:
        return (await self.request(f"/{kind}/{tmdb_id}/recommendations")).get("results", [])

    async def season(self, tmdb_id: str, season: int) -> Dict[str, Any]:
        return await self.request(f"/tv/{tmdb_id}/season/{season}")

    async def discover(self, kind: str, genre: Optional[str] = None, page: int = 1) -> Any:
        return (await self.request(f"/discover/{kind}", {"page": page, "with_genres": genre})).get("results", [])
