"""Client settings defaults, validation and clamping."""

from __future__ import annotations

from typing import Any

DEFAULT_WORKER_URL = "http://127.0.0.1:8771"

# Probe cadence: slower while the worker answers, faster while it does not.
PROBE_CONNECTED_SECONDS = 60
PROBE_DISCONNECTED_SECONDS = 30

# Download status polling while jobs are outstanding.
DOWNLOAD_POLL_SECONDS = 1

# Polls an id may be missing from the worker snapshot before it is declared lost.
LOST_JOB_POLL_THRESHOLD = 2

# Watched videos downloaded longer ago than this are removed by cleanup.
CLEANUP_AFTER_DAYS = 30

REQUEST_TIMEOUT_SECONDS = 10

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 4
MIN_POLL_INTERVAL_MINUTES = 5
MIN_MAX_AGE_DAYS = 1

DEFAULT_CLIENT_SETTINGS: dict[str, Any] = {
    "worker_url": DEFAULT_WORKER_URL,
    "poll_interval_minutes": 30,
    "max_age_days": 14,
    "concurrency": 2,
    "channels": [],
    "cookies_file": None,
    "probe_connected_seconds": PROBE_CONNECTED_SECONDS,
    "probe_disconnected_seconds": PROBE_DISCONNECTED_SECONDS,
    "download_poll_seconds": DOWNLOAD_POLL_SECONDS,
    "cleanup_after_days": CLEANUP_AFTER_DAYS,
}

_INT_FIELDS = (
    "poll_interval_minutes",
    "max_age_days",
    "concurrency",
    "probe_connected_seconds",
    "probe_disconnected_seconds",
    "cleanup_after_days",
)


def validate_settings(settings):
    errors = []
    if not isinstance(settings, dict):
        return ["settings must be an object"]

    for field in _INT_FIELDS:
        value = settings.get(field)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{field} must be an integer")
        elif value <= 0:
            errors.append(f"{field} must be positive")

    poll = settings.get("download_poll_seconds")
    if poll is not None and (isinstance(poll, bool) or not isinstance(poll, (int, float)) or poll <= 0):
        errors.append("download_poll_seconds must be a positive number")

    url = settings.get("worker_url")
    if url is not None and (not isinstance(url, str) or not url.startswith(("http://", "https://"))):
        errors.append("worker_url must be an http(s) URL")

    cookies_file = settings.get("cookies_file")
    if cookies_file is not None and not isinstance(cookies_file, str):
        errors.append("cookies_file must be a string")

    channels = settings.get("channels")
    if channels is not None:
        if not isinstance(channels, list):
            errors.append("channels must be a list")
        else:
            for idx, channel in enumerate(channels):
                if not isinstance(channel, dict):
                    errors.append(f"channels[{idx}] must be an object")
                elif not channel.get("id"):
                    errors.append(f"channels[{idx}] missing id")
    return errors


def _clamp_int(value, default, low, high=None):
    try:
        value = int(value)
    except (TypeError, ValueError):
        return default
    value = max(low, value)
    if high is not None:
        value = min(high, value)
    return value


def normalize_settings(raw):
    """Merge ``raw`` over the defaults and clamp numeric fields to their ranges."""
    settings = dict(DEFAULT_CLIENT_SETTINGS)
    if isinstance(raw, dict):
        settings.update({k: v for k, v in raw.items() if v is not None or k == "cookies_file"})
    settings["concurrency"] = _clamp_int(settings["concurrency"], 2, MIN_CONCURRENCY, MAX_CONCURRENCY)
    settings["poll_interval_minutes"] = _clamp_int(
        settings["poll_interval_minutes"], 30, MIN_POLL_INTERVAL_MINUTES
    )
    settings["max_age_days"] = _clamp_int(settings["max_age_days"], 14, MIN_MAX_AGE_DAYS)
    settings["probe_connected_seconds"] = _clamp_int(
        settings["probe_connected_seconds"], PROBE_CONNECTED_SECONDS, 1
    )
    settings["probe_disconnected_seconds"] = _clamp_int(
        settings["probe_disconnected_seconds"], PROBE_DISCONNECTED_SECONDS, 1
    )
    settings["cleanup_after_days"] = _clamp_int(settings["cleanup_after_days"], CLEANUP_AFTER_DAYS, 1)
    channels = settings.get("channels")
    settings["channels"] = list(channels) if isinstance(channels, list) else []
    return settings
