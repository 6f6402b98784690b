import json

from config.settings import DEFAULT_CLIENT_SETTINGS, normalize_settings, validate_settings
from engine import config as worker_config


def test_normalize_clamps_user_settings():
    settings = normalize_settings({"concurrency": 9, "poll_interval_minutes": 1, "max_age_days": 0})

    assert settings["concurrency"] == 4
    assert settings["poll_interval_minutes"] == 5
    assert settings["max_age_days"] == 1

    assert normalize_settings({"concurrency": 0})["concurrency"] == 1
    assert normalize_settings({"concurrency": "x"})["concurrency"] == 2


def test_normalize_fills_defaults():
    assert normalize_settings(None) == DEFAULT_CLIENT_SETTINGS
    assert normalize_settings({"channels": "nope"})["channels"] == []


def test_validate_settings_reports_each_problem():
    errors = validate_settings(
        {
            "concurrency": "2",
            "worker_url": "ftp://host",
            "channels": [{"name": "no id"}, "bad"],
            "download_poll_seconds": 0,
        }
    )

    assert "concurrency must be an integer" in errors
    assert "worker_url must be an http(s) URL" in errors
    assert "channels[0] missing id" in errors
    assert "channels[1] must be an object" in errors
    assert "download_poll_seconds must be a positive number" in errors
    assert validate_settings({"concurrency": 3, "channels": [{"id": "UC1"}]}) == []
    assert validate_settings([]) == ["settings must be an object"]


def test_worker_config_env_overrides():
    config = worker_config.resolve_worker_config(
        environ={
            "VIDSTASH_PORT": "9000",
            "VIDSTASH_MAX_CONCURRENT": "12",
            "VIDSTASH_RETENTION_HOURS": "1.5",
            "VIDSTASH_YTDLP": "python -m yt_dlp",
        }
    )

    assert config["port"] == 9000
    assert config["max_concurrent"] == 4
    assert config["retention_hours"] == 1.5
    assert config["ytdlp_command"] == ["python", "-m", "yt_dlp"]


def test_worker_config_ignores_invalid_env_values():
    config = worker_config.resolve_worker_config(environ={"VIDSTASH_PORT": "not-a-port"})

    assert config["port"] == worker_config.DEFAULT_PORT


def test_worker_config_file_is_validated(tmp_path, monkeypatch):
    good = tmp_path / "good.json"
    good.write_text(json.dumps({"port": 9100, "max_concurrent": 3}), encoding="utf-8")
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"port": "eighty", "max_concurrent": 3}), encoding="utf-8")

    monkeypatch.setattr(worker_config, "resolve_config_path", lambda path: str(good))
    config = worker_config.resolve_worker_config(environ={})
    assert config["port"] == 9100
    assert config["max_concurrent"] == 3

    monkeypatch.setattr(worker_config, "resolve_config_path", lambda path: str(bad))
    config = worker_config.resolve_worker_config(environ={})
    assert config["port"] == worker_config.DEFAULT_PORT
    assert config["max_concurrent"] == worker_config.DEFAULT_WORKER_CONFIG["max_concurrent"]


def test_validate_config():
    assert worker_config.validate_config({"max_concurrent": 7}) == ["max_concurrent must be between 1 and 4"]
    assert worker_config.validate_config({"ytdlp_command": []}) == [
        "ytdlp_command must be a string or a list of strings"
    ]
    assert worker_config.validate_config("nope") == ["config must be a JSON object"]
