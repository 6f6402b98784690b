"""Failure taxonomy shared by the worker engine and the client."""

from __future__ import annotations

ERROR_KIND_SUBMISSION_REJECTED = "submission_rejected"
ERROR_KIND_SPAWN_FAILED = "spawn_failed"
ERROR_KIND_PROCESS_FAILED = "process_failed"
ERROR_KIND_FINALIZE_FAILED = "finalize_failed"
ERROR_KIND_LOST_JOB = "lost_job"
ERROR_KIND_CANCELLED = "cancelled"


class VidstashError(Exception):
    kind = "error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message())
        self.message = str(self)

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__


class WorkerUnavailable(VidstashError):
    """The worker could not be reached or answered with a transport-level error."""

    kind = ERROR_KIND_SUBMISSION_REJECTED


class SubmissionRejected(WorkerUnavailable):
    """The worker refused a submission."""


class SpawnFailed(VidstashError):
    """The external download binary could not be launched."""

    kind = ERROR_KIND_SPAWN_FAILED


class ProcessFailed(VidstashError):
    """The external process exited non-zero."""

    kind = ERROR_KIND_PROCESS_FAILED

    def __init__(self, message: str | None = None, *, returncode: int | None = None):
        self.returncode = returncode
        super().__init__(message or f"yt-dlp exited with code {returncode}")


class FinalizeFailed(VidstashError):
    """The download finished but its result could not be catalogued."""

    kind = ERROR_KIND_FINALIZE_FAILED


class LostJob(VidstashError):
    kind = ERROR_KIND_LOST_JOB

    @classmethod
    def default_message(cls) -> str:
        return "Lost connection to job"


class JobCancelled(VidstashError):
    """User-initiated cancellation; not a failure."""

    kind = ERROR_KIND_CANCELLED

    @classmethod
    def default_message(cls) -> str:
        return "Cancelled"
