from datetime import datetime, timezone

from client.feeds import FeedPoller, parse_published
from db.records import ClientStateStore

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class _Controller:
    def __init__(self):
        self.enqueued = []

    def enqueue(self, info):
        self.enqueued.append(info)
        return True


def _poller(db_path, *, channels, source, connected=True, max_age_days=14):
    controller = _Controller()
    state = ClientStateStore(db_path)
    poller = FeedPoller(
        controller,
        state,
        feed_source=source,
        settings_provider=lambda: {"channels": channels, "max_age_days": max_age_days},
        is_connected=lambda: connected,
        now=lambda: NOW,
    )
    return poller, controller, state


def test_recent_entries_are_enqueued(db_path):
    entries = [
        {"id": "new", "title": "New one", "published_at": "2024-03-14T00:00:00Z"},
        {"id": "old", "title": "Old one", "published_at": "2024-02-01T00:00:00Z"},
        {"id": None, "title": "No id", "published_at": "2024-03-14T00:00:00Z"},
        {"id": "undated", "title": "No date"},
    ]
    poller, controller, state = _poller(
        db_path,
        channels=[{"id": "UC1", "name": "Chan"}],
        source=lambda channel: entries,
    )

    result = poller.poll()

    assert [info["id"] for info in controller.enqueued] == ["new"]
    assert controller.enqueued[0]["channel_id"] == "UC1"
    assert controller.enqueued[0]["channel_name"] == "Chan"
    assert result["found"] == 1
    assert result["error"] is None
    assert state.get("last_poll")["found"] == 1


def test_failing_channel_is_skipped(db_path):
    def source(channel):
        if channel["id"] == "broken":
            raise RuntimeError("feed unavailable")
        return [{"id": "ok", "published_at": "2024-03-15T00:00:00+00:00"}]

    poller, controller, _ = _poller(
        db_path,
        channels=[{"id": "broken"}, {"id": "UC2"}],
        source=source,
    )

    result = poller.poll()

    assert [info["id"] for info in controller.enqueued] == ["ok"]
    assert controller.enqueued[0]["title"] == "ok"
    assert result["found"] == 1


def test_no_channels_is_recorded_as_error(db_path):
    poller, controller, state = _poller(db_path, channels=[], source=lambda channel: [])

    result = poller.poll()

    assert result["error"] == "No channels configured"
    assert state.get("last_poll")["error"] == "No channels configured"
    assert controller.enqueued == []


def test_disconnected_poll_is_recorded_as_error(db_path):
    poller, controller, _ = _poller(
        db_path,
        channels=[{"id": "UC1"}],
        source=lambda channel: [{"id": "x", "published_at": "2024-03-15T00:00:00Z"}],
        connected=False,
    )

    assert poller.poll()["error"] == "Host not connected"
    assert controller.enqueued == []


def test_parse_published():
    assert parse_published("2024-03-14T10:00:00Z") == datetime(2024, 3, 14, 10, tzinfo=timezone.utc)
    assert parse_published("2024-03-14T10:00:00").tzinfo is timezone.utc
    assert parse_published("yesterday") is None
    assert parse_published(None) is None
