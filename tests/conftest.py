import sys
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.errors import SubmissionRejected, WorkerUnavailable  # noqa: E402


class FakeWorker:
    """In-memory stand-in for WorkerClient."""

    def __init__(self):
        self.alive = True
        self.reachable = True
        self.snapshot = {}
        self.submitted = []
        self.acked = []
        self.cancelled = []
        self.deleted = []
        self.reject_ids = set()
        self.total_bytes = 0

    def _check(self):
        if not self.reachable:
            raise WorkerUnavailable("Host not reachable: connection refused")

    def is_alive(self):
        return self.alive

    def ping(self):
        if not self.alive:
            raise WorkerUnavailable("ping not acknowledged")
        return {"ok": True, "pid": 1}

    def downloads(self):
        self._check()
        return {key: dict(value) for key, value in self.snapshot.items()}

    def submit(self, item_id, auth_context=None):
        if item_id in self.reject_ids:
            raise SubmissionRejected("worker busy")
        self._check()
        self.submitted.append((item_id, auth_context))
        return {"ok": True, "status": "downloading"}

    def submitted_ids(self):
        return [item_id for item_id, _auth in self.submitted]

    def cancel(self, item_id):
        self._check()
        self.cancelled.append(item_id)
        self.snapshot.pop(item_id, None)
        return True

    def ack(self, item_id):
        self._check()
        self.acked.append(item_id)
        return True

    def delete_files(self, file_path, thumbnail_path):
        self._check()
        self.deleted.append((file_path, thumbnail_path))
        return [p for p in (file_path, thumbnail_path) if p]

    def disk_usage(self):
        self._check()
        return self.total_bytes

    def close(self):
        pass


class FakeScheduler:
    """Records APScheduler calls without running anything."""

    def __init__(self):
        self.running = False
        self.jobs = {}
        self.rescheduled = []

    def add_job(self, func, trigger=None, args=None, id=None, **kwargs):
        self.jobs[id] = {"func": func, "trigger": trigger, "args": list(args or [])}
        return self.jobs[id]

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def remove_job(self, job_id):
        self.jobs.pop(job_id)

    def reschedule_job(self, job_id, trigger=None):
        self.rescheduled.append((job_id, trigger))
        self.jobs[job_id]["trigger"] = trigger

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [event for event in self.events if event["type"] == event_type]


@pytest.fixture
def fake_worker():
    return FakeWorker()


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "client.sqlite")
