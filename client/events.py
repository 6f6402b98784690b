import logging
import threading

logger = logging.getLogger(__name__)

DOWNLOAD_PROGRESS = "download-progress"
DOWNLOAD_STARTED = "download-started"
DOWNLOAD_COMPLETE = "download-complete"
DOWNLOAD_ERROR = "download-error"
QUEUE_UPDATED = "queue-updated"
CONNECTION_RESTORED = "connection-restored"
CONNECTION_LOST = "connection-lost"
VIDEO_UPDATED = "video-updated"
VIDEO_DELETED = "video-deleted"


class EventBus:
    """Fan-out of client events to in-process listeners."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners = []

    def subscribe(self, listener):
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type, **payload):
        with self._lock:
            listeners = list(self._listeners)
        event = {"type": event_type, **payload}
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed type=%s", event_type)
