"""In-memory job state for the download worker.

The store is the single source of truth for what the external downloader is
doing. Only the execution engine writes to it; everything else reads
snapshots. Each job moves through a small state machine driven by explicit
events::

    submitted -> queued
    started   -> downloading
    progress  -> downloading (percent/speed/eta only)
    exited_ok -> done
    failed    -> error
    cancelled / acknowledged -> removed

Terminal entries stay until the client acknowledges them. A retention window
bounds how long an unacknowledged entry may linger.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field

from engine.log import log_event

logger = logging.getLogger(__name__)

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_DOWNLOADING = "downloading"
JOB_STATUS_DONE = "done"
JOB_STATUS_ERROR = "error"

TERMINAL_STATUSES = (JOB_STATUS_DONE, JOB_STATUS_ERROR)
ACTIVE_STATUSES = (JOB_STATUS_QUEUED, JOB_STATUS_DOWNLOADING)

EVENT_SUBMITTED = "submitted"
EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_EXITED_OK = "exited_ok"
EVENT_FAILED = "failed"

# event -> (allowed source statuses, target status); None means "no entry yet".
TRANSITIONS = {
    EVENT_SUBMITTED: ((None, JOB_STATUS_DONE, JOB_STATUS_ERROR), JOB_STATUS_QUEUED),
    EVENT_STARTED: (
        (None, JOB_STATUS_QUEUED, JOB_STATUS_DONE, JOB_STATUS_ERROR),
        JOB_STATUS_DOWNLOADING,
    ),
    EVENT_PROGRESS: ((JOB_STATUS_DOWNLOADING,), JOB_STATUS_DOWNLOADING),
    EVENT_EXITED_OK: ((JOB_STATUS_DOWNLOADING,), JOB_STATUS_DONE),
    EVENT_FAILED: ((JOB_STATUS_QUEUED, JOB_STATUS_DOWNLOADING), JOB_STATUS_ERROR),
}

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60


@dataclass
class JobState:
    id: str
    status: str
    percent: float = 0.0
    speed: str | None = None
    eta: str | None = None
    file_path: str | None = None
    thumbnail_path: str | None = None
    file_size: int | None = None
    duration: int | None = None
    description: str | None = None
    error: str | None = None
    error_kind: str | None = None
    created_at: float = field(default_factory=time.monotonic)
    finished_at: float | None = None

    def to_dict(self):
        return {
            "status": self.status,
            "percent": self.percent,
            "speed": self.speed,
            "eta": self.eta,
            "filePath": self.file_path,
            "thumbnailPath": self.thumbnail_path,
            "fileSize": self.file_size,
            "duration": self.duration,
            "description": self.description,
            "error": self.error,
            "errorKind": self.error_kind,
        }


class JobStore:
    def __init__(self, *, retention_seconds=DEFAULT_RETENTION_SECONDS, clock=time.monotonic):
        self._jobs: dict[str, JobState] = {}
        self.retention_seconds = retention_seconds
        self._clock = clock

    def __contains__(self, job_id):
        return job_id in self._jobs

    def __len__(self):
        return len(self._jobs)

    def get_status(self, job_id):
        job = self._jobs.get(job_id)
        return job.status if job else None

    def get(self, job_id):
        job = self._jobs.get(job_id)
        return job.to_dict() if job else None

    def snapshot(self):
        return {job_id: copy.deepcopy(job.to_dict()) for job_id, job in self._jobs.items()}

    def _transition(self, job_id, event):
        allowed, target = TRANSITIONS[event]
        current = self._jobs.get(job_id)
        current_status = current.status if current else None
        if current_status not in allowed:
            logger.debug(
                "Ignoring %s for job %s in state %s", event, job_id, current_status
            )
            return None
        if current is None or event in (EVENT_SUBMITTED, EVENT_STARTED):
            # A fresh attempt never inherits the previous run's results.
            current = JobState(id=job_id, status=target, created_at=self._clock())
            self._jobs[job_id] = current
        else:
            current.status = target
        return current

    def mark_queued(self, job_id):
        return self._transition(job_id, EVENT_SUBMITTED) is not None

    def mark_downloading(self, job_id):
        return self._transition(job_id, EVENT_STARTED) is not None

    def update_progress(self, job_id, *, percent=None, speed=None, eta=None):
        job = self._transition(job_id, EVENT_PROGRESS)
        if job is None:
            return False
        if percent is not None:
            job.percent = max(0.0, min(100.0, float(percent)))
        job.speed = speed
        job.eta = eta
        return True

    def mark_done(self, job_id, *, file_path, thumbnail_path=None, file_size=None, duration=None, description=""):
        job = self._transition(job_id, EVENT_EXITED_OK)
        if job is None:
            return False
        job.percent = 100.0
        job.file_path = file_path
        job.thumbnail_path = thumbnail_path
        job.file_size = file_size
        job.duration = duration
        job.description = description
        job.finished_at = self._clock()
        return True

    def mark_error(self, job_id, message, *, kind=None):
        job = self._transition(job_id, EVENT_FAILED)
        if job is None:
            return False
        job.error = message
        job.error_kind = kind
        job.finished_at = self._clock()
        return True

    def remove(self, job_id):
        """Forget a job regardless of state (cancellation)."""
        return self._jobs.pop(job_id, None) is not None

    def acknowledge(self, job_id):
        job = self._jobs.get(job_id)
        if job is None or job.status not in TERMINAL_STATUSES:
            return False
        del self._jobs[job_id]
        return True

    def purge_expired(self, now=None):
        if not self.retention_seconds:
            return []
        now = self._clock() if now is None else now
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status in TERMINAL_STATUSES
            and job.finished_at is not None
            and now - job.finished_at >= self.retention_seconds
        ]
        for job_id in expired:
            job = self._jobs.pop(job_id)
            log_event(
                logging.WARNING,
                "job_retention_expired",
                job_id=job_id,
                status=job.status,
                age_seconds=round(now - job.finished_at, 1),
            )
        return expired
