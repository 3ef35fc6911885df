import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from embedrelay.metadata.tmdb import MetadataError, MetadataNotConfigured, TMDBClient

metadata_router = APIRouter()
logger = logging.getLogger(__name__)

DISCOVER_KINDS = ("movie", "tv")


def get_tmdb_client() -> TMDBClient:
    return TMDBClient()


async def _call(coro):
    try:
        return await coro
    except MetadataError as e:
        raise HTTPException(status_code=500, detail={"error": e.message, "details": e.details})


def _require_query(query: Optional[str]) -> str:
    if not query:
        raise HTTPException(status_code=400, detail={"error": "Query parameter is required"})
    return query


def _ensure_configured(client: TMDBClient):
    # Fail before validating the query so a missing key is reported as such.
    try:
        client.ensure_configured()
    except MetadataNotConfigured as e:
        raise HTTPException(status_code=500, detail={"error": e.message, "details": e.details})


@metadata_router.get("/movies/search")
async def search_movies(
    client: Annotated[TMDBClient, Depends(get_tmdb_client)],
    query: Optional[str] = None,
    page: Annotated[int, Query(ge=1)] = 1,
):
    _ensure_configured(client)
    return await _call(client.search("movie", _require_query(query), page))


@metadata_router.get("/movies/{tmdb_id}")
async def movie_details(tmdb_id: str, client: Annotated[TMDBClient, Depends(get_tmdb_client)]):
    return await _call(client.details("movie", tmdb_id))


@metadata_router.get("/movies/{tmdb_id}/recommendations")
async def movie_recommendations(tmdb_id: str, client: Annotated[TMDBClient, Depends(get_tmdb_client)]):
    return await _call(client.recommendations("movie", tmdb_id))


@metadata_router.get("/tv/search")
async def search_tv(
    client: Annotated[TMDBClient, Depends(get_tmdb_client)],
    query: Optional[str] = None,
    page: Annotated[int, Query(ge=1)] = 1,
):
    _ensure_configured(client)
    return await _call(client.search("tv", _require_query(query), page))


@metadata_router.get("/tv/{tmdb_id}")
async def tv_details(tmdb_id: str, client: Annotated[TMDBClient, Depends(get_tmdb_client)]):
    return await _call(client.details("tv", tmdb_id))


@metadata_router.get("/tv/{tmdb_id}/recommendations")
async def tv_recommendations(tmdb_id: str, client: Annotated[TMDBClient, Depends(get_tmdb_client)]):
    return await _call(client.recommendations("tv", tmdb_id))


@metadata_router.get("/tv/{tmdb_id}/season/{season}")
async def tv_season(tmdb_id: str, season: int, client: Annotated[TMDBClient, Depends(get_tmdb_client)]):
    return await _call(client.season(tmdb_id, season))


@metadata_router.get("/discover/{kind}")
async def discover(
    kind: str,
    client: Annotated[TMDBClient, Depends(get_tmdb_client)],
    genre: Optional[str] = None,
    page: Annotated[int, Query(ge=1)] = 1,
):
    _ensure_configured(client)
    if kind not in DISCOVER_KINDS:
        raise HTTPException(status_code=400, detail={"error": "Invalid type. Must be 'movie' or 'tv'"})
    return await _call(client.discover(kind, genre, page))
