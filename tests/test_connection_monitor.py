from client import events as ev
from client.connection import ConnectionMonitor
from client.events import EventBus
from db.records import ClientStateStore

from conftest import EventRecorder


def _monitor(db_path, worker):
    state = ClientStateStore(db_path)
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder)
    intervals = []
    pulls = []
    monitor = ConnectionMonitor(
        worker,
        bus,
        state,
        connected_interval=60,
        disconnected_interval=30,
        reschedule=intervals.append,
        initial_pull=lambda: pulls.append(True),
    )
    return monitor, state, recorder, intervals, pulls


def test_reconnect_switches_cadence_and_pulls_once(db_path, fake_worker):
    monitor, _, recorder, intervals, pulls = _monitor(db_path, fake_worker)
    assert monitor.interval == 30

    assert monitor.check() is True
    assert monitor.connected is True
    assert intervals == [60]
    assert pulls == [True]

    fake_worker.alive = False
    assert monitor.check() is False
    assert intervals == [60, 30]

    fake_worker.alive = True
    monitor.check()
    monitor.check()
    assert intervals == [60, 30, 60]
    assert pulls == [True]

    types = [event["type"] for event in recorder.events]
    assert types == [ev.CONNECTION_RESTORED, ev.CONNECTION_LOST, ev.CONNECTION_RESTORED]


def test_no_initial_pull_when_a_poll_was_recorded(db_path, fake_worker):
    monitor, state, _, _, pulls = _monitor(db_path, fake_worker)
    state.set("last_poll", {"time": "2024-01-01T00:00:00+00:00", "found": 0, "error": None})

    monitor.check()

    assert pulls == []


def test_staying_disconnected_keeps_short_interval(db_path, fake_worker):
    fake_worker.alive = False
    monitor, _, recorder, intervals, pulls = _monitor(db_path, fake_worker)

    monitor.check()
    monitor.check()

    assert monitor.interval == 30
    assert intervals == []
    assert pulls == []
    assert recorder.events == []
