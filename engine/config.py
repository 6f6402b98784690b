"""Worker configuration: JSON file defaults overridden by environment variables."""

from __future__ import annotations

import json
import logging
import os
import shlex

from engine.job_queue import DEFAULT_MAX_CONCURRENT, DEFAULT_YTDLP_COMMAND, MAX_CONCURRENT, MIN_CONCURRENT, clamp_concurrency
from engine.job_store import DEFAULT_RETENTION_SECONDS
from engine.paths import resolve_config_path

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8771

DEFAULT_WORKER_CONFIG = {
    "host": DEFAULT_HOST,
    "port": DEFAULT_PORT,
    "max_concurrent": DEFAULT_MAX_CONCURRENT,
    "retention_hours": DEFAULT_RETENTION_SECONDS / 3600,
    "ytdlp_command": list(DEFAULT_YTDLP_COMMAND),
}

_ENV_OVERRIDES = {
    "VIDSTASH_HOST": "host",
    "VIDSTASH_PORT": "port",
    "VIDSTASH_MAX_CONCURRENT": "max_concurrent",
    "VIDSTASH_RETENTION_HOURS": "retention_hours",
    "VIDSTASH_YTDLP": "ytdlp_command",
}


def load_config(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    host = config.get("host")
    if host is not None and (not isinstance(host, str) or not host.strip()):
        errors.append("host must be a non-empty string")

    port = config.get("port")
    if port is not None:
        if isinstance(port, bool) or not isinstance(port, int) or not (0 < port < 65536):
            errors.append("port must be an integer between 1 and 65535")

    max_concurrent = config.get("max_concurrent")
    if max_concurrent is not None:
        if isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int):
            errors.append("max_concurrent must be an integer")
        elif not (MIN_CONCURRENT <= max_concurrent <= MAX_CONCURRENT):
            errors.append(f"max_concurrent must be between {MIN_CONCURRENT} and {MAX_CONCURRENT}")

    retention = config.get("retention_hours")
    if retention is not None:
        if isinstance(retention, bool) or not isinstance(retention, (int, float)) or retention < 0:
            errors.append("retention_hours must be a non-negative number")

    command = config.get("ytdlp_command")
    if command is not None:
        if isinstance(command, str):
            if not command.strip():
                errors.append("ytdlp_command must not be empty")
        elif not isinstance(command, list) or not command or not all(isinstance(p, str) and p for p in command):
            errors.append("ytdlp_command must be a string or a list of strings")

    return errors


def _coerce_env(key, raw):
    if key == "port":
        return int(raw)
    if key == "max_concurrent":
        return int(raw)
    if key == "retention_hours":
        return float(raw)
    return raw


def resolve_worker_config(path=None, *, environ=None):
    """Defaults, then the JSON config file (if present and valid), then env overrides."""
    environ = os.environ if environ is None else environ
    config = dict(DEFAULT_WORKER_CONFIG)

    try:
        config_path = resolve_config_path(path or environ.get("VIDSTASH_CONFIG"))
    except ValueError as exc:
        logging.error("Invalid config override: %s", exc)
        config_path = resolve_config_path(None)

    if os.path.isfile(config_path):
        try:
            file_config = load_config(config_path)
        except (OSError, json.JSONDecodeError) as exc:
            logging.error("Failed to read config %s: %s", config_path, exc)
            file_config = {}
        errors = validate_config(file_config)
        if errors:
            for error in errors:
                logging.error("Config error (%s): %s", config_path, error)
        else:
            config.update({k: v for k, v in file_config.items() if k in DEFAULT_WORKER_CONFIG})

    for env_key, key in _ENV_OVERRIDES.items():
        raw = environ.get(env_key)
        if not raw:
            continue
        try:
            config[key] = _coerce_env(key, raw)
        except ValueError:
            logging.warning("Ignoring invalid %s=%r", env_key, raw)

    command = config.get("ytdlp_command")
    if isinstance(command, str):
        command = shlex.split(command)
    config["ytdlp_command"] = list(command or DEFAULT_YTDLP_COMMAND)
    config["max_concurrent"] = clamp_concurrency(config.get("max_concurrent"))
    return config
