#!/usr/bin/env python3
"""Command line entry point for the archive client."""

import argparse
import json
import logging
import signal
import sys
import threading

from client.service import ArchiveClient
from engine.json_utils import safe_json_dumps
from engine.log import setup_logging
from engine.paths import LOG_DIR


def _print_json(payload):
    print(safe_json_dumps(payload, indent=2, sort_keys=True))


def _parse_assignment(text):
    key, sep, raw = text.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"expected key=value, got {text!r}")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return key.strip(), value


def _cmd_run(client, args):
    stop_event = threading.Event()

    def _handle_signal(_signum, _frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    client.start()
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        client.stop()
    return 0


def _cmd_enqueue(client, args):
    client.check_connection()
    accepted = client.enqueue(
        {
            "id": args.id,
            "title": args.title,
            "channel_id": args.channel_id,
            "channel_name": args.channel_name,
            "published_at": args.published_at,
        }
    )
    _print_json({"ok": True, "enqueued": accepted, "video": client.records.get(args.id)})
    return 0


def _cmd_status(client, args):
    client.check_connection()
    _print_json(client.status())
    return 0


def _cmd_list(client, args):
    _print_json(client.records.list(status=args.status))
    return 0


def _cmd_cancel(client, args):
    client.check_connection()
    client.cancel_download(args.id)
    _print_json({"ok": True})
    return 0


def _cmd_delete(client, args):
    deleted = client.delete_video(args.id)
    _print_json({"ok": True, "deleted": deleted})
    return 0 if deleted else 1


def _cmd_watched(client, args):
    updated = client.mark_watched(args.id, not args.unwatched)
    _print_json({"ok": updated})
    return 0 if updated else 1


def _cmd_disk_usage(client, args):
    _print_json({"totalBytes": client.disk_usage()})
    return 0


def _cmd_cleanup(client, args):
    _print_json({"cleaned": client.cleanup_old_videos()})
    return 0


def _cmd_settings(client, args):
    if args.set:
        try:
            client.update_settings(dict(args.set))
        except ValueError as exc:
            print(f"Invalid settings: {exc}", file=sys.stderr)
            return 2
    _print_json(client.settings)
    return 0


COMMANDS = {
    "run": _cmd_run,
    "enqueue": _cmd_enqueue,
    "status": _cmd_status,
    "list": _cmd_list,
    "cancel": _cmd_cancel,
    "delete": _cmd_delete,
    "watched": _cmd_watched,
    "disk-usage": _cmd_disk_usage,
    "cleanup": _cmd_cleanup,
    "settings": _cmd_settings,
}


def build_parser():
    parser = argparse.ArgumentParser(prog="vidstash", description="Vidstash archive client")
    parser.add_argument("--db", help="Path to the client SQLite database.")
    parser.add_argument("--verbose", action="store_true", help="Log to the console as well as client.log.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the scheduler loop until interrupted.")

    enqueue = sub.add_parser("enqueue", help="Queue a video for download.")
    enqueue.add_argument("id")
    enqueue.add_argument("--title")
    enqueue.add_argument("--channel-id")
    enqueue.add_argument("--channel-name")
    enqueue.add_argument("--published-at", help="ISO-8601 publish time; newer items download first.")

    sub.add_parser("status", help="Show connection, queue and record counts.")

    list_cmd = sub.add_parser("list", help="List item records.")
    list_cmd.add_argument("--status", choices=["queued", "downloading", "done", "error"])

    for name, help_text in (
        ("cancel", "Cancel a queued or running download."),
        ("delete", "Delete a video record and its files."),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("id")

    watched = sub.add_parser("watched", help="Mark a video watched.")
    watched.add_argument("id")
    watched.add_argument("--unwatched", action="store_true")

    sub.add_parser("disk-usage", help="Show bytes used by the downloads directory.")
    sub.add_parser("cleanup", help="Remove old watched videos.")

    settings = sub.add_parser("settings", help="Show or change settings.")
    settings.add_argument("--set", action="append", type=_parse_assignment, metavar="KEY=VALUE")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(LOG_DIR, "client.log", level=logging.INFO, console=args.verbose)
    client = ArchiveClient(db_path=args.db)
    return COMMANDS[args.command](client, args)


if __name__ == "__main__":
    sys.exit(main())
