from client import events as ev
from client.events import EventBus
from client.queue import QueueController
from db.records import ItemRecordStore

from conftest import EventRecorder


def _controller(db_path, worker, **kwargs):
    records = ItemRecordStore(db_path)
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder)
    controller = QueueController(records, worker, bus, **kwargs)
    return controller, records, recorder


def _info(item_id, published):
    return {"id": item_id, "title": item_id.upper(), "channel_id": "UC1", "published_at": published}


def test_newer_item_starts_first_and_older_waits(db_path, fake_worker):
    controller, records, _ = _controller(db_path, fake_worker, concurrency=1)

    controller.enqueue(_info("A", "2024-01-02T00:00:00+00:00"))
    controller.enqueue(_info("B", "2024-01-01T00:00:00+00:00"))

    assert fake_worker.submitted_ids() == ["A"]
    assert controller.backlog_ids() == ["B"]
    assert records.get("B")["status"] == "queued"

    controller.release("A")
    assert fake_worker.submitted_ids() == ["A", "B"]


def test_backlog_is_sorted_newest_first(db_path, fake_worker):
    controller, _, _ = _controller(db_path, fake_worker, concurrency=1)
    controller.enqueue(_info("busy", "2023-12-01T00:00:00+00:00"))

    controller.enqueue(_info("old", "2024-01-01T00:00:00+00:00"))
    controller.enqueue(_info("new", "2024-01-03T00:00:00+00:00"))
    controller.enqueue(_info("tie1", "2024-01-02T00:00:00+00:00"))
    controller.enqueue(_info("tie2", "2024-01-02T00:00:00+00:00"))

    assert controller.backlog_ids() == ["new", "tie1", "tie2", "old"]
    controller.release("busy")
    assert fake_worker.submitted_ids() == ["busy", "new"]


def test_ceiling_is_never_exceeded(db_path, fake_worker):
    controller, records, _ = _controller(db_path, fake_worker, concurrency=2)

    for day in range(1, 6):
        controller.enqueue(_info(f"v{day}", f"2024-01-0{day}T00:00:00+00:00"))

    assert controller.active_count() == 2
    assert len(fake_worker.submitted) == 2
    assert records.status_counts()["queued"] == 3

    controller.release(fake_worker.submitted_ids()[0])
    assert controller.active_count() == 2
    assert len(fake_worker.submitted) == 3


def test_enqueue_is_noop_for_done_or_downloading(db_path, fake_worker):
    controller, records, recorder = _controller(db_path, fake_worker)
    records.upsert("done1", title="Kept", status="done", file_path="a.mp4")
    records.upsert("dl1", status="downloading")

    assert controller.enqueue(_info("done1", "2024-01-01T00:00:00+00:00")) is False
    assert controller.enqueue(_info("dl1", "2024-01-01T00:00:00+00:00")) is False

    assert records.get("done1")["title"] == "Kept"
    assert records.get("done1")["status"] == "done"
    assert fake_worker.submitted == []
    assert recorder.events == []


def test_enqueue_twice_while_backlogged_is_noop(db_path, fake_worker):
    controller, _, _ = _controller(db_path, fake_worker, concurrency=1)
    controller.enqueue(_info("busy", "2024-01-05T00:00:00+00:00"))

    assert controller.enqueue(_info("x", "2024-01-01T00:00:00+00:00")) is True
    assert controller.enqueue(_info("x", "2024-01-01T00:00:00+00:00")) is False
    assert controller.backlog_ids() == ["x"]


def test_errored_item_can_be_requeued(db_path, fake_worker):
    controller, records, _ = _controller(db_path, fake_worker)
    records.upsert("x", status="error", error_message="Cancelled")

    assert controller.enqueue(_info("x", "2024-01-01T00:00:00+00:00")) is True
    assert records.get("x")["status"] == "downloading"
    assert records.get("x")["error_message"] is None


def test_submission_failure_marks_error_and_frees_slot(db_path, fake_worker):
    fake_worker.reject_ids.add("bad")
    controller, records, recorder = _controller(db_path, fake_worker, concurrency=1)
    controller.enqueue(_info("busy", "2024-01-09T00:00:00+00:00"))
    controller.enqueue(_info("bad", "2024-01-02T00:00:00+00:00"))
    controller.enqueue(_info("good", "2024-01-01T00:00:00+00:00"))

    controller.release("busy")

    assert records.get("bad")["status"] == "error"
    assert records.get("bad")["error_message"] == "API error: worker busy"
    assert fake_worker.submitted_ids() == ["busy", "good"]
    assert controller.active_ids() == ["good"]
    assert [e["id"] for e in recorder.of_type(ev.DOWNLOAD_ERROR)] == ["bad"]


def test_disconnected_worker_fails_immediately(db_path, fake_worker):
    controller, records, _ = _controller(db_path, fake_worker, is_connected=lambda: False)

    controller.enqueue(_info("x", "2024-01-01T00:00:00+00:00"))

    assert records.get("x")["status"] == "error"
    assert records.get("x")["error_message"] == "Host not connected"
    assert fake_worker.submitted == []
    assert controller.active_count() == 0


def test_auth_context_and_started_hook(db_path, fake_worker):
    started = []
    controller, _, recorder = _controller(
        db_path,
        fake_worker,
        auth_provider=lambda: "cookie-text",
        on_work_started=lambda: started.append(True),
    )

    controller.enqueue(_info("x", "2024-01-01T00:00:00+00:00"))

    assert fake_worker.submitted == [("x", "cookie-text")]
    assert started == [True]
    assert [e["id"] for e in recorder.of_type(ev.DOWNLOAD_STARTED)] == ["x"]


def test_shorts_detector_result_is_recorded(db_path, fake_worker):
    def detector(item_id):
        if item_id == "broken":
            raise RuntimeError("lookup failed")
        return item_id == "short"

    controller, records, _ = _controller(db_path, fake_worker, shorts_detector=detector)
    controller.enqueue(_info("short", "2024-01-01T00:00:00+00:00"))
    controller.enqueue(_info("broken", "2024-01-01T00:00:00+00:00"))

    assert records.get("short")["is_short"] is True
    assert records.get("broken")["is_short"] is False


def test_title_defaults_to_id(db_path, fake_worker):
    controller, records, _ = _controller(db_path, fake_worker)

    controller.enqueue({"id": "untitled", "published_at": "2024-01-01T00:00:00+00:00"})

    assert records.get("untitled")["title"] == "untitled"


def test_remove_and_reset(db_path, fake_worker):
    controller, _, _ = _controller(db_path, fake_worker, concurrency=1)
    controller.enqueue(_info("busy", "2024-01-05T00:00:00+00:00"))
    controller.enqueue(_info("x", "2024-01-01T00:00:00+00:00"))

    assert controller.remove("x") is True
    assert controller.remove("x") is False
    assert controller.has_outstanding() is True

    controller.reset()
    assert controller.has_outstanding() is False


def test_raising_concurrency_drains_backlog(db_path, fake_worker):
    controller, _, _ = _controller(db_path, fake_worker, concurrency=1)
    for day in range(1, 4):
        controller.enqueue(_info(f"v{day}", f"2024-01-0{day}T00:00:00+00:00"))

    assert controller.set_concurrency(10) == 4

    assert controller.active_count() == 3
    assert controller.backlog_ids() == []


def test_adopt_respects_ceiling(db_path, fake_worker):
    controller, _, _ = _controller(db_path, fake_worker, concurrency=1)

    assert controller.adopt("a") is True
    assert controller.adopt("a") is False
    assert controller.adopt("b") is False
    assert controller.active_ids() == ["a"]


def test_enqueue_hook_runs_only_for_accepted_items(db_path, fake_worker):
    seen = []
    controller, records, _ = _controller(db_path, fake_worker, concurrency=1, on_enqueue=seen.append)
    records.upsert("done1", status="done")

    controller.enqueue(_info("new", "2024-01-02T00:00:00+00:00"))
    controller.enqueue(_info("new", "2024-01-02T00:00:00+00:00"))
    controller.enqueue(_info("done1", "2024-01-01T00:00:00+00:00"))

    assert seen == ["new"]
