import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "config": Path("/config"),
            "downloads": Path("/downloads"),
            "logs": Path("/logs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "config": base / "config",
        "downloads": base / "videos",
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("VIDSTASH_DATA_DIR", _DEFAULTS["data"])).resolve()
CONFIG_DIR = Path(os.environ.get("VIDSTASH_CONFIG_DIR", _DEFAULTS["config"])).resolve()
DOWNLOADS_DIR = Path(os.environ.get("VIDSTASH_DOWNLOADS_DIR", _DEFAULTS["downloads"])).resolve()
LOG_DIR = Path(os.environ.get("VIDSTASH_LOG_DIR", _DEFAULTS["logs"])).resolve()
DB_PATH = Path(os.environ.get("VIDSTASH_DB_PATH", DATA_DIR / "database" / "client.sqlite")).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    downloads_dir: str
    channels_dir: str
    thumbnails_dir: str
    temp_dir: str
    cookies_file: str
    pid_file: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        resolved = os.path.join(CONFIG_DIR, "config.json")
    elif os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(CONFIG_DIR, path))
    if not is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    try:
        return os.path.commonpath([real, base]) == base
    except ValueError:
        return False


def resolve_under(base_dir, rel_path):
    """Join ``rel_path`` onto ``base_dir``; None when the result escapes the base."""
    rel_path = (rel_path or "").replace("\\", "/").lstrip("/")
    if not rel_path:
        return None
    candidate = os.path.abspath(os.path.join(base_dir, rel_path))
    if not is_within_base(candidate, base_dir):
        return None
    return candidate


def relative_artifact_path(path, base_dir):
    return os.path.relpath(path, base_dir).replace(os.sep, "/")


def build_engine_paths(downloads_dir=None, *, data_dir=None, config_dir=None, log_dir=None):
    downloads = Path(downloads_dir or DOWNLOADS_DIR).resolve()
    data = Path(data_dir or DATA_DIR).resolve()
    config = Path(config_dir or CONFIG_DIR).resolve()
    logs = Path(log_dir or LOG_DIR).resolve()
    channels_dir = downloads / "channels"
    thumbnails_dir = downloads / "thumbnails"
    temp_dir = data / "tmp"

    for d in (downloads, channels_dir, thumbnails_dir, temp_dir, config, logs):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(logs),
        downloads_dir=str(downloads),
        channels_dir=str(channels_dir),
        thumbnails_dir=str(thumbnails_dir),
        temp_dir=str(temp_dir),
        cookies_file=str(config / "cookies.txt"),
        pid_file=str(data / "vidstash-worker.pid"),
    )
