import logging
import threading

from client import events as ev
from config.settings import PROBE_CONNECTED_SECONDS, PROBE_DISCONNECTED_SECONDS

logger = logging.getLogger(__name__)

LAST_POLL_KEY = "last_poll"


class ConnectionMonitor:
    """Liveness probe with an interval that depends on the last outcome."""

    def __init__(
        self,
        worker,
        events,
        state,
        *,
        connected_interval=PROBE_CONNECTED_SECONDS,
        disconnected_interval=PROBE_DISCONNECTED_SECONDS,
        reschedule=None,
        initial_pull=None,
    ):
        self.worker = worker
        self.events = events
        self.state = state
        self.connected_interval = connected_interval
        self.disconnected_interval = disconnected_interval
        self.reschedule = reschedule
        self.initial_pull = initial_pull
        self._lock = threading.Lock()
        self._connected = False
        self._initial_pull_done = False
        self._interval = disconnected_interval

    @property
    def connected(self):
        return self._connected

    @property
    def interval(self):
        return self._interval

    def current_interval(self):
        return self.connected_interval if self._connected else self.disconnected_interval

    def check(self):
        alive = self.worker.is_alive()
        with self._lock:
            was_connected = self._connected
            self._connected = alive
            pull = False
            if alive and not was_connected and not self._initial_pull_done:
                if self.state.get(LAST_POLL_KEY) is None:
                    self._initial_pull_done = True
                    pull = True
            interval = self.current_interval()
            interval_changed = interval != self._interval
            self._interval = interval

        if alive and not was_connected:
            logger.info("Worker connection restored")
            self.events.emit(ev.CONNECTION_RESTORED)
        elif was_connected and not alive:
            logger.warning("Worker connection lost")
            self.events.emit(ev.CONNECTION_LOST)

        if interval_changed and self.reschedule is not None:
            self.reschedule(interval)
        if pull and self.initial_pull is not None:
            logger.info("No previous feed poll recorded; pulling backlog")
            self.initial_pull()
        return alive
