import json
import math
import os
from datetime import datetime
from pathlib import Path

from api.server import port_in_use
from client.cli import build_parser
from engine.json_utils import safe_json, safe_json_dumps
from engine.log import setup_logging
from engine.paths import build_engine_paths, relative_artifact_path, resolve_under


def test_resolve_under_rejects_escapes(tmp_path):
    base = tmp_path / "downloads"
    base.mkdir()

    assert resolve_under(str(base), "channels/C/a.mp4") == str(base / "channels" / "C" / "a.mp4")
    assert resolve_under(str(base), "/thumbnails/a.jpg") == str(base / "thumbnails" / "a.jpg")
    assert resolve_under(str(base), "../secret.txt") is None
    assert resolve_under(str(base), "channels/../../secret.txt") is None
    assert resolve_under(str(base), "") is None


def test_resolve_under_rejects_symlink_escape(tmp_path):
    base = tmp_path / "downloads"
    base.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    os.symlink(outside, base / "link")

    assert resolve_under(str(base), "link/file.txt") is None


def test_build_engine_paths_creates_layout(tmp_path):
    paths = build_engine_paths(
        tmp_path / "downloads",
        data_dir=tmp_path / "data",
        config_dir=tmp_path / "config",
        log_dir=tmp_path / "logs",
    )

    for directory in (paths.downloads_dir, paths.channels_dir, paths.thumbnails_dir, paths.temp_dir, paths.log_dir):
        assert os.path.isdir(directory)
    assert paths.cookies_file == str(tmp_path / "config" / "cookies.txt")
    assert relative_artifact_path(os.path.join(paths.thumbnails_dir, "a.jpg"), paths.downloads_dir) == "thumbnails/a.jpg"


def test_safe_json_handles_awkward_values():
    payload = {"nan": math.nan, "when": datetime(2024, 1, 2, 3, 4, 5), "path": Path("/x"), "raw": b"hi", 1: (1, 2)}

    assert safe_json(payload) == {
        "nan": None,
        "when": "2024-01-02T03:04:05",
        "path": "/x",
        "raw": "hi",
        "1": [1, 2],
    }
    assert json.loads(safe_json_dumps({"inf": math.inf})) == {"inf": None}


def test_setup_logging_adds_one_file_handler(tmp_path):
    import logging

    root = logging.getLogger("")
    before = list(root.handlers)
    try:
        first = setup_logging(str(tmp_path), "test.log")
        second = setup_logging(str(tmp_path), "test.log")
        added = [h for h in root.handlers if h not in before]
        assert first == second == str(tmp_path / "test.log")
        assert len(added) == 1
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
                handler.close()


def test_port_in_use_detects_bound_socket():
    import socket

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    try:
        assert port_in_use("127.0.0.1", sock.getsockname()[1]) is True
    finally:
        sock.close()


def test_cli_parses_subcommands():
    parser = build_parser()

    args = parser.parse_args(["enqueue", "abc", "--published-at", "2024-01-01T00:00:00Z"])
    assert args.command == "enqueue"
    assert args.published_at == "2024-01-01T00:00:00Z"

    args = parser.parse_args(["settings", "--set", "concurrency=3", "--set", "worker_url=http://h:1"])
    assert args.set == [("concurrency", 3), ("worker_url", "http://h:1")]

    args = parser.parse_args(["watched", "abc", "--unwatched"])
    assert args.unwatched is True
