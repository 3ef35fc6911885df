import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Query, Request, Depends
from fastapi.responses import JSONResponse

from embedrelay.extractors.base import InvalidContentIdentifier, NoCandidateFound
from embedrelay.extractors.providers import build_extraction_request
from embedrelay.extractors.resolver import MultiSourceResolver
from embedrelay.schemas import AttemptInfo, ExtractionFailure, ExtractionResponse
from embedrelay.utils.http_utils import encode_proxy_url, get_original_scheme, url_origin

extractor_router = APIRouter()
logger = logging.getLogger(__name__)


def get_resolver() -> MultiSourceResolver:
    return MultiSourceResolver()


@extractor_router.get("/extract", response_model=ExtractionResponse, response_model_by_alias=True)
async def extract_stream(
    request: Request,
    resolver: Annotated[MultiSourceResolver, Depends(get_resolver)],
    url: Annotated[Optional[str], Query(description="Provider page URL to extract from.")] = None,
    content_kind: Annotated[Optional[str], Query(alias="contentKind", description="movie or tv.")] = None,
    tmdb_id: Annotated[Optional[str], Query(alias="id", description="TMDB identifier of the content.")] = None,
    season: Annotated[Optional[str], Query(description="Season number, required for tv.")] = None,
    episode: Annotated[Optional[str], Query(description="Episode number, required for tv.")] = None,
):
    """Find the playable stream behind a provider page or a movie / TV episode identity."""
    try:
        extraction_request = build_extraction_request(url, content_kind, tmdb_id, season, episode)
    except InvalidContentIdentifier as e:
        logger.info(f"Rejected extraction request: {e}")
        return JSONResponse(status_code=400, content={"error": str(e)})

    try:
        result = await resolver.resolve(extraction_request)
    except NoCandidateFound as e:
        failure = ExtractionFailure(
            attempted_sources=e.attempted_sources,
            attempts=[AttemptInfo.from_attempt(attempt) for attempt in e.attempts],
        )
        return JSONResponse(status_code=404, content=failure.model_dump(by_alias=True))
    except Exception as e:
        logger.exception(f"Extraction failed: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to extract stream", "details": str(e)})

    proxy_base_url = str(request.url_for("stream_proxy").replace(scheme=get_original_scheme(request)))
    proxy_url = encode_proxy_url(proxy_base_url, result.stream_url, referer=f"{url_origin(result.page_url)}/")
    return ExtractionResponse.from_result(result, proxy_url)


extractor_router.add_api_route(
    "/api/extract-stream",
    extract_stream,
    methods=["GET"],
    response_model=ExtractionResponse,
    response_model_by_alias=True,
    include_in_schema=False,
)
