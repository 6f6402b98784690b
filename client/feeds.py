import logging
from datetime import datetime, timedelta, timezone

from client.connection import LAST_POLL_KEY
from db.records import utc_now

logger = logging.getLogger(__name__)


def parse_published(value):
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class FeedPoller:
    """Runs the feed source over every configured channel and enqueues recent entries."""

    def __init__(self, controller, state, *, feed_source, settings_provider, is_connected, now=None):
        self.controller = controller
        self.state = state
        self.feed_source = feed_source
        self.settings_provider = settings_provider
        self.is_connected = is_connected
        self._now = now or (lambda: datetime.now(timezone.utc))

    def _finish(self, found, error):
        result = {"time": utc_now(), "found": found, "error": error}
        self.state.set(LAST_POLL_KEY, result)
        if error:
            logger.warning("Feed poll finished error=%s", error)
        else:
            logger.info("Feed poll finished found=%s", found)
        return result

    def poll(self):
        settings = self.settings_provider()
        channels = settings.get("channels") or []
        if not channels:
            return self._finish(0, "No channels configured")
        if not self.is_connected():
            return self._finish(0, "Host not connected")

        cutoff = self._now() - timedelta(days=int(settings.get("max_age_days") or 1))
        found = 0
        for channel in channels:
            channel_id = channel.get("id")
            try:
                entries = list(self.feed_source(channel) or [])
            except Exception:
                logger.exception("Feed poll failed channel=%s", channel_id)
                continue
            for entry in entries:
                item_id = entry.get("id")
                published = parse_published(entry.get("published_at"))
                if not item_id or published is None:
                    continue
                if published < cutoff:
                    continue
                self.controller.enqueue(
                    {
                        "id": item_id,
                        "title": entry.get("title") or item_id,
                        "channel_id": channel_id,
                        "channel_name": entry.get("channel_name") or channel.get("name"),
                        "published_at": entry.get("published_at"),
                    }
                )
                found += 1
        return self._finish(found, None)
