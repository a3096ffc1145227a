"""
FastAPI layer exposing resize and palette extraction.

Endpoints:
 - GET /health
 - POST /process
 - POST /palette

Pipelines run on FastAPI's worker thread pool, so a request waiting on a
remote background-removal job holds one pooled thread while other requests
keep being served. `/process` also watches the client connection and sets the
job's cancel event when the caller goes away, so polling stops early.
"""

from __future__ import annotations

import asyncio
from functools import lru_cache
import logging
import threading
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import config
from .errors import ImageServiceError
from .palette import PaletteEngine
from .pipeline import PalettePipeline, ResizePipeline, ResizeRequest
from .remote_job import BackgroundRemovalClient
from .storage import BlobStore, S3BlobStore

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Imagesmith Resize & Palette Service", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["*"],
)


class ProcessRequest(BaseModel):
    key: Optional[str] = None
    w: Optional[float] = None
    h: Optional[float] = None
    fit: Optional[str] = None
    removeBackground: Optional[bool] = None
    removeBg: Optional[bool] = None  # legacy name used by older clients
    allowUpscale: Optional[bool] = None
    withoutEnlargement: Optional[bool] = None  # legacy inverse of allowUpscale


class ProcessResponse(BaseModel):
    url: str
    key: str
    width: int
    height: int
    fit: str
    format: str


class PaletteRequest(BaseModel):
    key: Optional[str] = None
    k: Optional[int] = None


class PaletteResponse(BaseModel):
    colors: List[str]
    previewUrl: str
    jsonKey: str
    pngKey: str


@lru_cache()
def get_store() -> BlobStore:
    return S3BlobStore.from_settings(settings)


def get_remover() -> Optional[BackgroundRemovalClient]:
    # One client (and HTTP session) per request: nothing is shared across requests.
    if not settings.fal_task_url:
        return None
    return BackgroundRemovalClient.from_settings(settings)


def get_resize_pipeline(
    store: BlobStore = Depends(get_store),
    remover: Optional[BackgroundRemovalClient] = Depends(get_remover),
) -> ResizePipeline:
    return ResizePipeline(settings, store, remover)


def get_palette_pipeline(store: BlobStore = Depends(get_store)) -> PalettePipeline:
    return PalettePipeline(settings, store, PaletteEngine.from_settings(settings))


def _resolve_allow_upscale(body: ProcessRequest) -> bool:
    if body.allowUpscale is not None:
        return body.allowUpscale
    if body.withoutEnlargement is not None:
        return not body.withoutEnlargement
    return False


@app.exception_handler(ImageServiceError)
async def service_error_handler(request: Request, exc: ImageServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {problems}"})


@app.get("/health")
def health():
    return {"status": "ok"}


async def watch_disconnect(http_request: Request, cancel_event: threading.Event, interval: float = 0.5) -> None:
    """Set `cancel_event` once the client has gone away."""
    while not cancel_event.is_set():
        if await http_request.is_disconnected():
            logger.info("client disconnected from %s; cancelling work", http_request.url.path)
            cancel_event.set()
            return
        await asyncio.sleep(interval)


@app.post("/process", response_model=ProcessResponse)
async def process_image(
    body: ProcessRequest,
    http_request: Request,
    pipeline: ResizePipeline = Depends(get_resize_pipeline),
):
    remove_background = body.removeBackground if body.removeBackground is not None else bool(body.removeBg)
    request = ResizeRequest.create(
        body.key,
        body.w,
        body.h,
        fit=body.fit,
        remove_background=remove_background,
        allow_upscale=_resolve_allow_upscale(body),
        max_px=settings.max_dimension,
    )
    cancel_event = threading.Event()
    watcher = asyncio.ensure_future(watch_disconnect(http_request, cancel_event))
    try:
        result = await run_in_threadpool(pipeline.process, request, cancel_event)
    except ImageServiceError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Resize failed for %s: %s", request.source_key, exc)
        raise HTTPException(status_code=500, detail=f"Processing failed: {exc}") from exc
    finally:
        # Also stops the watcher loop if it is between checks.
        cancel_event.set()
        watcher.cancel()

    return ProcessResponse(
        url=result.url,
        key=result.key,
        width=result.width,
        height=result.height,
        fit=result.fit,
        format=result.format,
    )


@app.post("/palette", response_model=PaletteResponse)
def extract_palette(body: PaletteRequest, pipeline: PalettePipeline = Depends(get_palette_pipeline)):
    try:
        result = pipeline.extract(body.key, body.k)
    except ImageServiceError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Palette extraction failed for %s: %s", body.key, exc)
        raise HTTPException(status_code=500, detail=f"Palette extraction failed: {exc}") from exc

    return PaletteResponse(
        colors=result.colors,
        previewUrl=result.preview_url,
        jsonKey=result.json_key,
        pngKey=result.swatch_key,
    )
