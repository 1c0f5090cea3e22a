from __future__ import annotations

import asyncio
import json
import logging
import re
import tempfile
import time
import zipfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Callable, Iterator, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from tubefetch.config import resolve_config
from tubefetch.downloader import MediaOperations
from tubefetch.events import EventBus
from tubefetch.exceptions import PlaylistLookupError, QueueUnavailable, ValidationError
from tubefetch.models import DownloadOptions, TubefetchConfig
from tubefetch.playlist import PlaylistFetcher, PlaylistListing
from tubefetch.queue import JobKind, JobStatus, JobWorkerPool, QueueBackend, SQLiteQueue
from tubefetch.ratelimit import RateLimiter
from tubefetch.status import JobStatusFacade
from tubefetch.storage import StorageLayout
from tubefetch.tokens import TokenSigner
from tubefetch.urls import validate_url

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")

router = APIRouter()


# --- Pydantic Models for Requests ---
class VideoDownloadRequest(BaseModel):
    url: Optional[str] = None
    format: str = "mp4"
    quality: str = "best"


class PlaylistDownloadRequest(BaseModel):
    url: Optional[str] = None
    options: dict = Field(default_factory=dict)
    selectedVideoIds: Optional[list[str]] = None  # noqa: N815


# --- HELPERS ---


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.client.host if request.client else "unknown"


def _enforce_rate_limit(request: Request) -> None:
    decision = request.app.state.limiter.check(_client_key(request))
    if not decision.allowed:
        raise HTTPException(status_code=429, detail="Too many requests, please slow down.")


def _build_options(raw: dict) -> DownloadOptions:
    try:
        return DownloadOptions(**raw)
    except PydanticValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid options: {e.errors()[0]['msg']}")


async def _enqueue(request: Request, kind: JobKind, payload: dict) -> dict:
    queue: QueueBackend = request.app.state.queue
    try:
        job_id = await asyncio.to_thread(queue.enqueue, kind.value, payload)
    except QueueUnavailable as e:
        logger.error("Failed to enqueue %s job: %s", kind.value, e)
        raise HTTPException(status_code=503, detail=f"Unable to enqueue {kind.value} job")
    return {"jobId": job_id}


async def _completed_job(request: Request, job_id: str):
    job = await asyncio.to_thread(request.app.state.queue.get_job, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status != JobStatus.COMPLETED.value:
        raise HTTPException(status_code=409, detail="Job not complete yet")
    return job


def _download_token(request: Request) -> Optional[str]:
    return request.headers.get("x-download-token") or request.query_params.get("token")


def parse_range(header: str, size: int) -> Optional[tuple[int, int]]:
    """Resolve a single ``bytes=`` range to inclusive offsets.

    Returns None when the header is not a byte range we understand (the whole
    file is served). Raises ValueError when the range cannot be satisfied.
    """
    match = RANGE_RE.match(header.strip())
    if not match or (not match.group(1) and not match.group(2)):
        return None

    first, last = match.groups()
    if not first:
        # Suffix range: the final N bytes
        length = int(last)
        if length == 0:
            raise ValueError("empty suffix range")
        return max(0, size - length), size - 1

    start = int(first)
    end = int(last) if last else size - 1
    end = min(end, size - 1)
    if start >= size or start > end:
        raise ValueError("range not satisfiable")
    return start, end


def _iter_file(path: Path, start: int, end: int) -> Iterator[bytes]:
    remaining = end - start + 1
    with open(path, "rb") as handle:
        handle.seek(start)
        while remaining > 0:
            chunk = handle.read(min(CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def _build_zip(paths: list[Path]):
    archive = tempfile.SpooledTemporaryFile(max_size=32 * 1024 * 1024)
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=5) as zf:
        for path in paths:
            zf.write(path, arcname=path.name)
    archive.seek(0)
    return archive


def _iter_spooled(archive) -> Iterator[bytes]:
    try:
        while True:
            chunk = archive.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        archive.close()


# --- API ENDPOINTS ---


@router.get("/")
async def root():
    return {"message": "tubefetch download API", "docs": "/docs", "health": "/health"}


@router.get("/health")
async def health_check(request: Request):
    stats = await asyncio.to_thread(request.app.state.queue.get_stats)
    return {"status": "ok", "queue": stats}


@router.post("/api/download/video", status_code=status.HTTP_202_ACCEPTED)
async def download_video(data: VideoDownloadRequest, request: Request):
    """Enqueue a single-video download."""
    _enforce_rate_limit(request)
    try:
        url = validate_url(data.url)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    options = _build_options({"format": data.format, "quality": data.quality})
    payload = {
        "url": url,
        "format": options.format,
        "quality": options.quality,
        "requestedAt": int(time.time() * 1000),
    }
    return await _enqueue(request, JobKind.VIDEO, payload)


@router.post("/api/download/playlist", status_code=status.HTTP_202_ACCEPTED)
async def download_playlist(data: PlaylistDownloadRequest, request: Request):
    """Enqueue a playlist download. Requires ``x-api-key`` when one is configured."""
    api_key = request.app.state.config.server.api_key
    if api_key and request.headers.get("x-api-key") != api_key:
        raise HTTPException(status_code=401, detail="Unauthorized")

    _enforce_rate_limit(request)
    try:
        url = validate_url(data.url)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    raw_options = dict(data.options)
    if data.selectedVideoIds is not None:
        raw_options["selectedVideoIds"] = data.selectedVideoIds
    options = _build_options(raw_options)

    payload = {
        "url": url,
        "options": options.model_dump(exclude_none=True),
        "requestedAt": int(time.time() * 1000),
    }
    return await _enqueue(request, JobKind.PLAYLIST, payload)


@router.get("/api/analyze")
async def analyze(request: Request, url: Optional[str] = None):
    """Read-only listing of a video or playlist."""
    _enforce_rate_limit(request)
    try:
        url = validate_url(url)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        listing: PlaylistListing = await asyncio.to_thread(request.app.state.fetch_listing, url)
    except PlaylistLookupError as e:
        logger.error("Failed to analyze %s: %s", url, e)
        raise HTTPException(status_code=502, detail="Unable to analyze URL. Please try again.")

    return {"url": url, **listing.model_dump()}


@router.get("/api/jobs/{job_id}")
async def get_job(job_id: str, request: Request):
    snapshot = await asyncio.to_thread(request.app.state.facade.get_job_snapshot, job_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return snapshot


async def event_generator(job_id: str, facade: JobStatusFacade) -> AsyncGenerator[str, None]:
    """
    SSE generator that yields job progress frames.
    """
    async for frame in facade.stream(job_id):
        yield f"data: {json.dumps(frame)}\n\n"


@router.get("/api/jobs/{job_id}/events")
async def job_events(job_id: str, request: Request):
    return StreamingResponse(
        event_generator(job_id, request.app.state.facade),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )


@router.get("/api/files/{job_id}/zip")
async def download_zip(job_id: str, request: Request):
    """All artifacts of a completed job as one zip. Any of its file tokens unlocks it."""
    job = await _completed_job(request, job_id)
    files = job.result.files if job.result else []
    if not files:
        raise HTTPException(status_code=404, detail="No files found for this job")

    signer: TokenSigner = request.app.state.signer
    token = _download_token(request)
    if not any(signer.verify(job_id, f.name, token) for f in files):
        raise HTTPException(status_code=403, detail="Forbidden")

    layout: StorageLayout = request.app.state.layout
    paths = []
    for artifact in files:
        path = layout.resolve_file(job_id, artifact.name)
        if path is not None and path.is_file():
            paths.append(path)
        else:
            logger.warning("Zip for %s skipping missing file %s", job_id, artifact.name)
    if not paths:
        raise HTTPException(status_code=404, detail="No files available for download")

    archive = await asyncio.to_thread(_build_zip, paths)
    return StreamingResponse(
        _iter_spooled(archive),
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="playlist_{job_id}.zip"',
            "Cache-Control": "no-cache",
        },
    )


@router.get("/api/files/{job_id}/{file_name}")
async def download_file(job_id: str, file_name: str, request: Request):
    """Serve one artifact; honours single byte ranges."""
    await _completed_job(request, job_id)

    if not request.app.state.signer.verify(job_id, file_name, _download_token(request)):
        raise HTTPException(status_code=403, detail="Forbidden")

    path = request.app.state.layout.resolve_file(job_id, file_name)
    if path is None or not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")

    size = path.stat().st_size
    headers = {
        "Content-Disposition": f'attachment; filename="{path.name}"',
        "Accept-Ranges": "bytes",
    }

    range_header = request.headers.get("range")
    byte_range = None
    if range_header:
        try:
            byte_range = parse_range(range_header, size)
        except ValueError:
            return Response(status_code=416, headers={"Content-Range": f"bytes */{size}"})

    if byte_range is None:
        headers["Content-Length"] = str(size)
        if size == 0:
            return Response(content=b"", media_type="application/octet-stream", headers=headers)
        return StreamingResponse(
            _iter_file(path, 0, size - 1), media_type="application/octet-stream", headers=headers
        )

    start, end = byte_range
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(end - start + 1)
    return StreamingResponse(
        _iter_file(path, start, end),
        status_code=206,
        media_type="application/octet-stream",
        headers=headers,
    )


# --- APP FACTORY ---


def create_app(
    config: Optional[TubefetchConfig] = None,
    queue: Optional[QueueBackend] = None,
    operations: Optional[MediaOperations] = None,
    fetch_listing: Optional[Callable[[str], PlaylistListing]] = None,
    start_workers: bool = True,
) -> FastAPI:
    """Build the API with its queue, event bus and worker pool.

    Everything stateful is constructed inside the lifespan and torn down with
    it; injected collaborators (tests, embedding) are used as given.
    """
    config = config or resolve_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_queue = queue is None
        job_queue = queue or SQLiteQueue.from_config(config.queue)

        bus = EventBus()
        bus.start(asyncio.get_running_loop())

        layout = StorageLayout.from_config(config.storage)
        signer = TokenSigner.from_config(config.server)
        pool = JobWorkerPool(job_queue, bus, layout, signer, config, operations)

        app.state.config = config
        app.state.queue = job_queue
        app.state.bus = bus
        app.state.layout = layout
        app.state.signer = signer
        app.state.pool = pool
        app.state.facade = JobStatusFacade(job_queue, bus, keepalive_s=config.server.keepalive_s)
        app.state.limiter = RateLimiter.from_config(config.server)
        app.state.fetch_listing = fetch_listing or PlaylistFetcher(
            config.downloader.ytdlp_binary, timeout_s=config.downloader.analyze_timeout_s
        )

        if start_workers:
            pool.start()
        try:
            yield
        finally:
            if start_workers:
                await asyncio.to_thread(pool.stop, True)
            bus.shutdown()
            if owned_queue:
                job_queue.close()

    app = FastAPI(title="tubefetch", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app
