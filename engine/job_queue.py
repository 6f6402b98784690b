"""Execution engine: runs yt-dlp child processes under a concurrency ceiling.

All bookkeeping happens on the event loop that calls :meth:`DownloadEngine.submit`;
the only parallelism is the child processes themselves.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import time
from collections import deque
from dataclasses import dataclass
from uuid import uuid4

from engine.errors import FinalizeFailed, ProcessFailed, SpawnFailed, VidstashError
from engine.job_store import JOB_STATUS_DOWNLOADING, JOB_STATUS_QUEUED, JobStore
from engine.log import log_event
from engine.paths import EnginePaths, relative_artifact_path

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 2
MIN_CONCURRENT = 1
MAX_CONCURRENT = 4
DEFAULT_PROGRESS_INTERVAL = 1.0
DEFAULT_YTDLP_COMMAND = ("yt-dlp",)

THUMBNAIL_EXTENSIONS = (".jpg", ".webp", ".png")
ERROR_MARKER = "ERROR:"
_STREAM_LIMIT = 1024 * 1024

# [download]  45.2% of ~ 100.00MiB at 5.00MiB/s ETA 00:10
_PROGRESS_RE = re.compile(
    r"(\d+(?:\.\d+)?)%\s+of\s+~?\s*\S+\s+at\s+(\S+)\s+ETA\s+(\S+)"
)


def clamp_concurrency(value, default=DEFAULT_MAX_CONCURRENT):
    try:
        value = int(value)
    except (TypeError, ValueError):
        return default
    return max(MIN_CONCURRENT, min(MAX_CONCURRENT, value))


def watch_url(video_id):
    return f"https://www.youtube.com/watch?v={video_id}"


def build_ytdlp_args(video_id, output_template, *, cookie_file=None):
    args = [
        "--no-playlist",
        "-S", "res:1080",
        "--merge-output-format", "mp4",
        "--write-thumbnail",
        "--convert-thumbnails", "jpg",
        "--newline",
        "--print-json",
        "--windows-filenames",
        "-o", output_template,
        watch_url(video_id),
    ]
    if cookie_file:
        args[:0] = ["--cookies", cookie_file]
    return args


def parse_progress_line(line):
    if not line:
        return None
    match = _PROGRESS_RE.search(line)
    if not match:
        return None
    try:
        percent = float(match.group(1))
    except ValueError:
        return None
    return {
        "percent": max(0.0, min(100.0, percent)),
        "speed": match.group(2),
        "eta": match.group(3),
    }


def extract_error_line(stderr_text, returncode):
    """Most specific diagnostic in the error stream, else a generic exit message."""
    error_lines = [
        line.strip()
        for line in (stderr_text or "").splitlines()
        if line.strip().startswith(ERROR_MARKER)
    ]
    if error_lines:
        return error_lines[-1]
    return f"yt-dlp exited with code {returncode}"


def parse_final_metadata(stdout_text):
    """Parse the trailing JSON object yt-dlp prints with ``--print-json``."""
    text = (stdout_text or "").strip()
    if not text:
        raise FinalizeFailed("Metadata parse error: no metadata in output")
    json_start = text.rfind("\n{")
    candidate = text[json_start + 1:] if json_start >= 0 else text
    try:
        meta = json.loads(candidate.strip())
    except json.JSONDecodeError as exc:
        raise FinalizeFailed(f"Metadata parse error: {exc}") from exc
    if not isinstance(meta, dict):
        raise FinalizeFailed("Metadata parse error: metadata is not an object")
    return meta


def relocate_thumbnail(media_path, job_id, thumbnails_dir):
    """Move the thumbnail written next to ``media_path`` to ``thumbnails/<id>.jpg``."""
    stem, _ = os.path.splitext(media_path)
    dest = os.path.join(thumbnails_dir, f"{job_id}.jpg")
    for ext in THUMBNAIL_EXTENSIONS:
        src = stem + ext
        if not os.path.isfile(src):
            continue
        try:
            os.makedirs(thumbnails_dir, exist_ok=True)
            shutil.move(src, dest)
        except OSError:
            logger.exception("Thumbnail relocation failed job_id=%s src=%s", job_id, src)
            continue
        return dest
    return dest if os.path.isfile(dest) else None


@dataclass(eq=False)
class _Run:
    job_id: str
    auth_context: str | None = None
    proc: asyncio.subprocess.Process | None = None
    cancelled: bool = False
    last_progress_at: float | None = None
    cookie_file: str | None = None


class DownloadEngine:
    def __init__(
        self,
        store: JobStore,
        paths: EnginePaths,
        *,
        max_concurrent=DEFAULT_MAX_CONCURRENT,
        command=DEFAULT_YTDLP_COMMAND,
        progress_interval=DEFAULT_PROGRESS_INTERVAL,
        clock=time.monotonic,
    ):
        self.store = store
        self.paths = paths
        self.max_concurrent = clamp_concurrency(max_concurrent)
        self.command = tuple(command or DEFAULT_YTDLP_COMMAND)
        self.progress_interval = progress_interval
        self._clock = clock
        self._active: dict[str, _Run] = {}
        self._pending: deque[_Run] = deque()
        self._tasks: set[asyncio.Task] = set()

    # ── Public verbs ─────────────────────────────────────────────────

    def submit(self, job_id, auth_context=None):
        if job_id in self._active:
            return JOB_STATUS_DOWNLOADING
        if any(run.job_id == job_id for run in self._pending):
            return JOB_STATUS_QUEUED
        run = _Run(job_id=job_id, auth_context=auth_context)
        if len(self._active) >= self.max_concurrent:
            self._pending.append(run)
            self.store.mark_queued(job_id)
            log_event(logging.INFO, "job_queued", job_id=job_id, waiting=len(self._pending))
            return JOB_STATUS_QUEUED
        self._launch(run)
        return JOB_STATUS_DOWNLOADING

    def cancel(self, job_id):
        run = self._active.pop(job_id, None)
        dropped = [pending for pending in self._pending if pending.job_id == job_id]
        for pending in dropped:
            self._pending.remove(pending)
        removed_state = self.store.remove(job_id)
        if run is not None:
            run.cancelled = True
            self._kill(run.proc)
            self._drain()
        found = run is not None or bool(dropped) or removed_state
        if found:
            log_event(
                logging.INFO,
                "job_cancelled",
                job_id=job_id,
                was_active=run is not None,
                was_pending=bool(dropped),
            )
        return found

    def acknowledge(self, job_id):
        return self.store.acknowledge(job_id)

    def snapshot(self):
        return self.store.snapshot()

    def active_ids(self):
        return list(self._active)

    def pending_ids(self):
        return [run.job_id for run in self._pending]

    def set_max_concurrent(self, value):
        self.max_concurrent = clamp_concurrency(value, default=self.max_concurrent)
        self._drain()

    async def wait_idle(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        self._pending.clear()
        runs = list(self._active.values())
        self._active.clear()
        for run in runs:
            run.cancelled = True
            self._kill(run.proc)
        await self.wait_idle()

    # ── Scheduling ───────────────────────────────────────────────────

    def _launch(self, run):
        self._active[run.job_id] = run
        self.store.mark_downloading(run.job_id)
        log_event(logging.INFO, "job_started", job_id=run.job_id, active=len(self._active))
        task = asyncio.get_running_loop().create_task(self._supervise(run))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _drain(self):
        while len(self._active) < self.max_concurrent and self._pending:
            run = self._pending.popleft()
            if run.job_id in self._active:
                continue
            self._launch(run)

    def _owns(self, run):
        return self._active.get(run.job_id) is run

    @staticmethod
    def _kill(proc):
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    # ── Process supervision ─────────────────────────────────────────

    def _output_template(self):
        return os.path.join(self.paths.channels_dir, "%(channel)s", "%(id)s.%(ext)s")

    def _prepare_cookie_file(self, run):
        if os.path.isfile(self.paths.cookies_file):
            logger.info("[download %s] Using manual cookies.txt", run.job_id)
            return self.paths.cookies_file
        if run.auth_context:
            os.makedirs(self.paths.temp_dir, exist_ok=True)
            path = os.path.join(self.paths.temp_dir, f"cookies-{run.job_id}-{uuid4().hex[:8]}.txt")
            with open(path, "w", encoding="utf-8") as handle:
                handle.write(run.auth_context)
            run.cookie_file = path
            logger.info("[download %s] Using submitted cookies (%d bytes)", run.job_id, len(run.auth_context))
            return path
        logger.info("[download %s] No cookies available", run.job_id)
        return None

    @staticmethod
    def _cleanup_cookie_file(run):
        if not run.cookie_file:
            return
        try:
            os.unlink(run.cookie_file)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Could not remove temporary cookie file %s", run.cookie_file)
        run.cookie_file = None

    async def _supervise(self, run):
        try:
            try:
                cookie_file = self._prepare_cookie_file(run)
            except OSError as exc:
                self._fail(run, SpawnFailed(f"Spawn error: cookie file: {exc}"))
                return
            argv = [*self.command, *build_ytdlp_args(run.job_id, self._output_template(), cookie_file=cookie_file)]
            logger.info("[download %s] Running: %s", run.job_id, " ".join(argv))
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.paths.downloads_dir,
                    limit=_STREAM_LIMIT,
                )
            except OSError as exc:
                self._fail(run, SpawnFailed(f"Spawn error: {exc}"))
                return
            run.proc = proc
            if run.cancelled:
                self._kill(proc)

            stderr_lines: list[str] = []
            stdout_bytes, _ = await asyncio.gather(
                proc.stdout.read(),
                self._read_stderr(run, proc.stderr, stderr_lines),
            )
            returncode = await proc.wait()
            self._on_exit(
                run,
                returncode,
                stdout_bytes.decode("utf-8", errors="replace"),
                "".join(stderr_lines),
            )
        except asyncio.CancelledError:
            self._kill(run.proc)
            raise
        except Exception as exc:
            logger.exception("[download %s] supervision failed", run.job_id)
            self._fail(run, ProcessFailed(f"Supervisor error: {exc}"))
        finally:
            self._cleanup_cookie_file(run)

    async def _read_stderr(self, run, stream, sink):
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Overlong line without a newline; skip the chunk and keep reading.
                raw = await stream.read(_STREAM_LIMIT)
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace")
            sink.append(text)
            line = text.strip()
            if not line:
                continue
            logger.debug("[download %s] %s", run.job_id, line)
            self._on_progress_line(run, line)

    def _on_progress_line(self, run, line):
        if not self._owns(run):
            return
        sample = parse_progress_line(line)
        if sample is None:
            return
        now = self._clock()
        if run.last_progress_at is not None and now - run.last_progress_at < self.progress_interval:
            return
        run.last_progress_at = now
        self.store.update_progress(run.job_id, **sample)

    def _fail(self, run, error: VidstashError):
        if not self._owns(run):
            log_event(logging.INFO, "job_outcome_discarded", job_id=run.job_id, error=error.message)
            return
        del self._active[run.job_id]
        try:
            self.store.mark_error(run.job_id, error.message, kind=error.kind)
            log_event(logging.WARNING, "job_failed", job_id=run.job_id, kind=error.kind, error=error.message)
        finally:
            self._drain()

    def _on_exit(self, run, returncode, stdout_text, stderr_text):
        if not self._owns(run):
            log_event(logging.INFO, "job_outcome_discarded", job_id=run.job_id, returncode=returncode)
            return
        log_event(logging.INFO, "job_exited", job_id=run.job_id, returncode=returncode)
        if returncode != 0:
            self._fail(run, ProcessFailed(extract_error_line(stderr_text, returncode), returncode=returncode))
            return
        try:
            result = self._finalize(run.job_id, stdout_text)
        except FinalizeFailed as exc:
            self._fail(run, exc)
            return
        del self._active[run.job_id]
        try:
            self.store.mark_done(run.job_id, **result)
            log_event(
                logging.INFO,
                "job_completed",
                job_id=run.job_id,
                file_path=result["file_path"],
                file_size=result["file_size"],
                duration=result["duration"],
            )
        finally:
            self._drain()

    def _finalize(self, job_id, stdout_text):
        meta = parse_final_metadata(stdout_text)
        filename = meta.get("filename") or meta.get("_filename")
        if not filename or not isinstance(filename, str):
            raise FinalizeFailed("Metadata parse error: missing filename")
        media_path = filename
        if not os.path.isabs(media_path):
            media_path = os.path.join(self.paths.downloads_dir, media_path)
        media_path = os.path.abspath(media_path)

        try:
            file_size = os.stat(media_path).st_size
        except OSError:
            file_size = None

        thumbnail = relocate_thumbnail(media_path, job_id, self.paths.thumbnails_dir)

        duration = meta.get("duration")
        try:
            duration = int(round(float(duration))) if duration else None
        except (TypeError, ValueError):
            duration = None

        return {
            "file_path": relative_artifact_path(media_path, self.paths.downloads_dir),
            "thumbnail_path": (
                relative_artifact_path(thumbnail, self.paths.downloads_dir) if thumbnail else None
            ),
            "file_size": file_size,
            "duration": duration,
            "description": meta.get("description") or "",
        }
