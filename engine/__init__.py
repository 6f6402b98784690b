from .job_queue import DownloadEngine, clamp_concurrency
from .job_store import JobState, JobStore
from .paths import EnginePaths, build_engine_paths

__all__ = [
    "DownloadEngine",
    "EnginePaths",
    "JobState",
    "JobStore",
    "build_engine_paths",
    "clamp_concurrency",
]
