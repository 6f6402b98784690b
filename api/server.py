#!/usr/bin/env python3
"""Run the worker API under uvicorn with a PID file and a single-instance guard."""

import argparse
import atexit
import logging
import os
import socket
import sys

import uvicorn

from engine.config import resolve_worker_config
from engine.log import setup_logging
from engine.paths import build_engine_paths, ensure_dir


def port_in_use(host, port):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
    except OSError:
        return True
    finally:
        sock.close()
    return False


def write_pid_file(path):
    ensure_dir(os.path.dirname(path))
    with open(path, "w", encoding="utf-8") as f:
        f.write(str(os.getpid()))

    def _cleanup():
        try:
            os.unlink(path)
        except OSError:
            pass

    atexit.register(_cleanup)


def main(argv=None):
    config = resolve_worker_config()
    parser = argparse.ArgumentParser(description="Vidstash download worker")
    parser.add_argument("--host", default=config["host"])
    parser.add_argument("--port", type=int, default=config["port"])
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args(argv)

    paths = build_engine_paths()
    setup_logging(paths.log_dir, "worker.log", console=True)

    if port_in_use(args.host, args.port):
        logging.info("Port %s already in use; another worker is running. Exiting.", args.port)
        return 0

    write_pid_file(paths.pid_file)
    logging.info("Worker listening on %s:%s (pid %s)", args.host, args.port, os.getpid())
    uvicorn.run("api.main:app", host=args.host, port=args.port, log_level=args.log_level, workers=1)
    return 0


if __name__ == "__main__":
    sys.exit(main())
