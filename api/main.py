"""Control API for the download worker.

Handlers validate arguments and pass through to the execution engine; the
only other work done here is filesystem I/O for artifact serving, deletion
and disk usage.
"""

import asyncio
import json
import logging
import os
import re

import anyio
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from engine.config import resolve_worker_config
from engine.job_queue import DownloadEngine
from engine.job_store import JobStore
from engine.json_utils import safe_json
from engine.log import log_event, setup_logging
from engine.paths import build_engine_paths, resolve_under
from engine.runtime import get_runtime_info

APP_NAME = "Vidstash Worker"
PURGE_INTERVAL_SECONDS = 60
STREAM_CHUNK_SIZE = 1024 * 1024

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")

MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}
DEFAULT_MEDIA_TYPE = "application/octet-stream"


class SubmitRequest(BaseModel):
    id: str
    authContext: str | None = None


class JobRequest(BaseModel):
    id: str


class DeleteFilesRequest(BaseModel):
    filePath: str | None = None
    thumbnailPath: str | None = None


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            safe_json(content),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


class RangeNotSatisfiable(Exception):
    pass


app = FastAPI(
    title=APP_NAME,
    description="Background download worker: job submission, status polling and artifact serving.",
    default_response_class=SafeJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "HEAD", "OPTIONS"],
    allow_headers=["Range", "Content-Type"],
    expose_headers=["Content-Range", "Content-Length", "Accept-Ranges"],
)


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    logging.warning("Rejected request %s %s: %s", request.method, request.url.path, exc.errors())
    return SafeJSONResponse({"detail": "Invalid request body"}, status_code=400)


async def _purge_loop():
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        store = getattr(app.state, "store", None)
        if store is None:
            continue
        try:
            store.purge_expired()
        except Exception:
            logging.exception("Job retention purge failed")


@app.on_event("startup")
async def startup():
    config = resolve_worker_config()
    paths = build_engine_paths()
    setup_logging(paths.log_dir, "worker.log")
    app.state.config = config
    app.state.paths = paths
    app.state.store = JobStore(retention_seconds=float(config["retention_hours"]) * 3600)
    app.state.engine = DownloadEngine(
        app.state.store,
        paths,
        max_concurrent=config["max_concurrent"],
        command=config["ytdlp_command"],
    )
    app.state.purge_task = asyncio.create_task(_purge_loop())
    log_event(
        logging.INFO,
        "worker_started",
        pid=os.getpid(),
        downloads_dir=paths.downloads_dir,
        max_concurrent=app.state.engine.max_concurrent,
        ytdlp_command=config["ytdlp_command"],
    )


@app.on_event("shutdown")
async def shutdown():
    purge_task = getattr(app.state, "purge_task", None)
    if purge_task:
        purge_task.cancel()
        try:
            await purge_task
        except asyncio.CancelledError:
            pass
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.shutdown()
    logging.info("Worker shutdown")


def _engine():
    engine = getattr(app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Worker not ready")
    return engine


def _downloads_dir():
    paths = getattr(app.state, "paths", None)
    if paths is None:
        raise HTTPException(status_code=503, detail="Worker not ready")
    return paths.downloads_dir


def _require_job_id(value):
    job_id = (value or "").strip()
    if not _JOB_ID_RE.match(job_id):
        raise HTTPException(status_code=400, detail="Invalid id")
    return job_id


def _delete_artifacts(base_dir, rel_paths):
    deleted = []
    for rel_path in rel_paths:
        if not rel_path:
            continue
        target = resolve_under(base_dir, rel_path)
        if target is None:
            logging.warning("Refusing to delete path outside downloads root: %s", rel_path)
            continue
        try:
            os.unlink(target)
            deleted.append(rel_path)
        except FileNotFoundError:
            continue
        except OSError:
            logging.exception("Failed to delete artifact %s", target)
    return deleted


def _downloads_total_bytes(base_dir):
    total_bytes = 0
    if not os.path.isdir(base_dir):
        return total_bytes
    for root, _dirs, files in os.walk(base_dir):
        for name in files:
            try:
                total_bytes += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total_bytes


def parse_range_header(value, size):
    """Return ``(start, end)`` inclusive, or None to serve the whole file."""
    if not value:
        return None
    match = _RANGE_RE.match(value.strip())
    if not match:
        return None
    first, last = match.group(1), match.group(2)
    if not first and not last:
        return None
    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable()
        return max(0, size - suffix), size - 1
    start = int(first)
    end = int(last) if last else size - 1
    if start >= size or end < start:
        raise RangeNotSatisfiable()
    return start, min(end, size - 1)


def _iter_file(path, start, length, chunk_size=STREAM_CHUNK_SIZE):
    with open(path, "rb") as f:
        f.seek(start)
        remaining = length
        while remaining > 0:
            chunk = f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


@app.get("/api/ping")
async def api_ping():
    return {"ok": True, "pid": os.getpid()}


@app.get("/api/version")
async def api_version():
    return get_runtime_info(getattr(app.state, "engine", None))


@app.get("/api/downloads")
async def api_downloads():
    return _engine().snapshot()


@app.post("/api/download")
async def api_download(payload: SubmitRequest):
    job_id = _require_job_id(payload.id)
    status = _engine().submit(job_id, payload.authContext or None)
    return {"ok": True, "status": status}


@app.post("/api/cancel")
async def api_cancel(payload: JobRequest):
    job_id = _require_job_id(payload.id)
    cancelled = _engine().cancel(job_id)
    return {"ok": True, "cancelled": cancelled}


@app.post("/api/ack")
async def api_ack(payload: JobRequest):
    job_id = _require_job_id(payload.id)
    removed = _engine().acknowledge(job_id)
    return {"ok": True, "removed": removed}


@app.post("/api/delete-files")
async def api_delete_files(payload: DeleteFilesRequest):
    deleted = await anyio.to_thread.run_sync(
        _delete_artifacts,
        _downloads_dir(),
        [payload.filePath, payload.thumbnailPath],
    )
    if deleted:
        log_event(logging.INFO, "artifacts_deleted", paths=deleted)
    return {"ok": True, "deleted": deleted}


@app.get("/api/disk-usage")
async def api_disk_usage():
    total = await anyio.to_thread.run_sync(_downloads_total_bytes, _downloads_dir())
    return {"totalBytes": total}


@app.api_route("/media/{rel_path:path}", methods=["GET", "HEAD"])
async def media_file(rel_path: str, request: Request):
    base_dir = _downloads_dir()
    candidate = resolve_under(base_dir, rel_path)
    if candidate is None:
        raise HTTPException(status_code=403, detail="Forbidden")
    if not os.path.isfile(candidate):
        raise HTTPException(status_code=404, detail="Not found")

    size = os.path.getsize(candidate)
    ext = os.path.splitext(candidate)[1].lower()
    content_type = MEDIA_TYPES.get(ext, DEFAULT_MEDIA_TYPE)
    headers = {"Accept-Ranges": "bytes"}

    try:
        byte_range = parse_range_header(request.headers.get("range"), size)
    except RangeNotSatisfiable:
        return Response(status_code=416, headers={"Content-Range": f"bytes */{size}"})

    if byte_range is None:
        start, end, status_code = 0, size - 1, 200
    else:
        start, end = byte_range
        status_code = 206
        headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    length = max(0, end - start + 1)
    headers["Content-Length"] = str(length)

    if request.method == "HEAD":
        return Response(status_code=status_code, headers=headers, media_type=content_type)
    return StreamingResponse(
        _iter_file(candidate, start, length),
        status_code=status_code,
        headers=headers,
        media_type=content_type,
    )
