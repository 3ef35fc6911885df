import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from embedrelay.browser.session import browser_session
from embedrelay.configs import settings
from embedrelay.const import CORS_ALLOWED_HEADERS, CORS_EXPOSED_HEADERS
from embedrelay.middleware import PreflightMiddleware
from embedrelay.routes import proxy_router, extractor_router, metadata_router

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await browser_session.start()
    try:
        yield
    finally:
        await browser_session.stop()


app = FastAPI(lifespan=lifespan)

if settings.cors_profile == "open":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=CORS_ALLOWED_HEADERS,
        expose_headers=CORS_EXPOSED_HEADERS,
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=CORS_ALLOWED_HEADERS,
        expose_headers=CORS_EXPOSED_HEADERS,
    )
app.add_middleware(PreflightMiddleware)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())})


@app.get("/health")
async def health_check():
    return {"status": "healthy", "browser": browser_session.is_running}


app.include_router(proxy_router, tags=["proxy"])
app.include_router(extractor_router, tags=["extractor"])
app.include_router(metadata_router, prefix="/api", tags=["metadata"])


def run():
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
