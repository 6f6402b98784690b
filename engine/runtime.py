"""Version and load details reported by ``GET /api/version``."""

import os
import platform

from yt_dlp.version import __version__ as ytdlp_version

APP_VERSION_ENV = "VIDSTASH_VERSION"
DEFAULT_APP_VERSION = "0.1.0"


def get_runtime_info(engine=None):
    info = {
        "app": "vidstash-worker",
        "app_version": os.environ.get(APP_VERSION_ENV, DEFAULT_APP_VERSION),
        "python_version": platform.python_version(),
        "yt_dlp_version": ytdlp_version,
        "pid": os.getpid(),
    }
    if engine is not None:
        info["max_concurrent"] = engine.max_concurrent
        info["active"] = len(engine.active_ids())
        info["pending"] = len(engine.pending_ids())
        info["ytdlp_command"] = list(engine.command)
    return info
