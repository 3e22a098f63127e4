from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from media_composer.config import Settings, get_settings
from media_composer.errors import ERROR_STATUS, ConfigError, EngineNotFound, MediaComposerError
from media_composer.models.api import (
    ErrorResponse,
    OutputListing,
    StoryRequest,
    VideoBatchResponse,
    VideoRequest,
    VideoResponse,
)
from media_composer.models.domain import JobOutcome
from media_composer.services.video_service import VideoService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger(__name__)

_service: VideoService | None = None
_engine_missing: str | None = None


def get_video_service(settings: Settings = Depends(get_settings)) -> VideoService:
    global _service
    if _service is None:
        _service = VideoService(settings=settings)
    return _service


def require_engine() -> None:
    if _engine_missing:
        raise EngineNotFound(_engine_missing)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    os.makedirs(settings.output_dir, exist_ok=True)
    os.makedirs(settings.tmp_dir, exist_ok=True)
    if settings.check_engine_on_startup:
        binary = get_video_service(settings).check_engine()
        log.info("encoding engine found", extra={"binary": binary})
    yield


_settings = get_settings()
app = FastAPI(title=_settings.app_name, lifespan=lifespan)
app.mount(
    f"/{_settings.output_path_prefix.strip('/')}",
    StaticFiles(directory=_settings.output_dir, check_dir=False),
    name="output",
)


def _error(kind: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=ErrorResponse(error_kind=kind, detail=detail).model_dump(),
    )


@app.exception_handler(EngineNotFound)
async def engine_not_found_handler(_request: Request, exc: EngineNotFound) -> JSONResponse:
    global _engine_missing
    if not _engine_missing:
        log.error("encoding engine unavailable, refusing new jobs", extra={"detail": exc.detail})
    _engine_missing = exc.detail
    return _error(exc.error_kind, exc.detail)


@app.exception_handler(MediaComposerError)
async def media_error_handler(_request: Request, exc: MediaComposerError) -> JSONResponse:
    return _error(exc.error_kind, exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
        for error in exc.errors()
    )
    return _error(ConfigError.error_kind, problems or "invalid request")


def _failure(outcome: JobOutcome) -> JSONResponse:
    return _error(outcome.error_kind or "internal_error", outcome.detail or "video generation failed")


@app.get("/", response_class=PlainTextResponse)
def index() -> str:
    return "media-composer is up. Try POST /make/segments"


@app.get("/healthz")
def healthz() -> dict[str, bool]:
    return {"ok": True}


@app.get("/__debug__/ls", response_model=OutputListing)
def debug_listing(
    settings: Settings = Depends(get_settings),
    service: VideoService = Depends(get_video_service),
) -> OutputListing:
    if not settings.debug_listing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    return OutputListing(files=service.artifacts.list_published())


@app.post(
    "/make/segments",
    response_model=VideoResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    dependencies=[Depends(require_engine)],
)
async def make_segments(payload: VideoRequest, service: VideoService = Depends(get_video_service)):
    outcome = await service.make_video(payload)
    if not outcome.ok:
        return _failure(outcome)
    artifact = outcome.artifacts[0]
    return VideoResponse(
        job_id=str(outcome.job_id),
        file=artifact.rel,
        file_url=artifact.url,
        duration_seconds=outcome.duration_seconds,
        took_ms=outcome.took_ms,
    )


@app.post(
    "/make/per-segment",
    response_model=VideoBatchResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    dependencies=[Depends(require_engine)],
)
async def make_per_segment(payload: VideoRequest, service: VideoService = Depends(get_video_service)):
    outcome = await service.make_per_segment(payload)
    if not outcome.ok:
        return _failure(outcome)
    return VideoBatchResponse(
        job_id=str(outcome.job_id),
        files=[artifact.rel for artifact in outcome.artifacts],
        file_urls=outcome.artifact_addresses,
        took_ms=outcome.took_ms,
    )


@app.post(
    "/make/story",
    response_model=VideoResponse,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    dependencies=[Depends(require_engine)],
)
async def make_story(payload: StoryRequest, service: VideoService = Depends(get_video_service)):
    outcome = await service.make_story(payload)
    if not outcome.ok:
        return _failure(outcome)
    artifact = outcome.artifacts[0]
    return VideoResponse(
        job_id=str(outcome.job_id),
        file=artifact.rel,
        file_url=artifact.url,
        duration_seconds=outcome.duration_seconds,
        took_ms=outcome.took_ms,
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("media_composer.main:app", host=settings.host, port=settings.port)
