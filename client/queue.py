"""Client-side backlog and concurrency ceiling for outbound submissions."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from client import events as ev
from config.settings import MAX_CONCURRENCY, MIN_CONCURRENCY
from db.records import (
    ITEM_STATUS_DONE,
    ITEM_STATUS_DOWNLOADING,
    ITEM_STATUS_ERROR,
    ITEM_STATUS_QUEUED,
)
from engine.errors import WorkerUnavailable

logger = logging.getLogger(__name__)

HOST_NOT_CONNECTED = "Host not connected"


def _clamp(value) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        return 2
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, value))


class QueueController:
    """Newest-first backlog drained into the worker under a local ceiling.

    The worker enforces its own ceiling too; this one only bounds what the
    client has in flight. Slots are reserved under the lock before the
    submission goes out, so concurrent drains never overshoot.
    """

    def __init__(
        self,
        records,
        worker,
        events,
        *,
        concurrency: int = 2,
        shorts_detector: Callable[[str], bool] | None = None,
        auth_provider: Callable[[], str | None] | None = None,
        is_connected: Callable[[], bool] | None = None,
        on_work_started: Callable[[], None] | None = None,
        on_enqueue: Callable[[str], None] | None = None,
    ) -> None:
        self.records = records
        self.worker = worker
        self.events = events
        self.shorts_detector = shorts_detector
        self.auth_provider = auth_provider
        self.is_connected = is_connected
        self.on_work_started = on_work_started
        self.on_enqueue = on_enqueue
        self._lock = threading.RLock()
        self._concurrency = _clamp(concurrency)
        self._backlog: list[tuple[str, str]] = []
        self._active: set[str] = set()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def set_concurrency(self, value) -> int:
        with self._lock:
            self._concurrency = _clamp(value)
        self.drain()
        return self._concurrency

    def active_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    def backlog_ids(self) -> list[str]:
        with self._lock:
            return [item_id for _key, item_id in self._backlog]

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def queue_length(self) -> int:
        with self._lock:
            return len(self._backlog)

    def is_active(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._active

    def has_outstanding(self) -> bool:
        with self._lock:
            return bool(self._active or self._backlog)

    def _is_short(self, item_id: str) -> bool:
        if self.shorts_detector is None:
            return False
        try:
            return bool(self.shorts_detector(item_id))
        except Exception:
            logger.warning("Shorts check failed id=%s", item_id, exc_info=True)
            return False

    def _insert_backlog(self, item_id: str, sort_key: str) -> None:
        # Insert after entries with an equal key so ties keep arrival order.
        index = len(self._backlog)
        for pos, (key, _existing) in enumerate(self._backlog):
            if key < sort_key:
                index = pos
                break
        self._backlog.insert(index, (sort_key, item_id))

    def enqueue(self, info: dict[str, Any]) -> bool:
        """Queue ``info`` for download; returns False when it was a no-op."""
        item_id = str(info.get("id") or "").strip()
        if not item_id:
            raise ValueError("item id is required")
        existing = self.records.get(item_id)
        if existing and existing.get("status") in (ITEM_STATUS_DONE, ITEM_STATUS_DOWNLOADING):
            return False
        with self._lock:
            if item_id in self._active or any(entry == item_id for _k, entry in self._backlog):
                return False
        if self.on_enqueue is not None:
            self.on_enqueue(item_id)

        is_short = self._is_short(item_id)
        self.records.upsert(
            item_id,
            title=info.get("title") or item_id,
            channel_id=info.get("channel_id"),
            channel_name=info.get("channel_name"),
            published_at=info.get("published_at"),
            is_short=is_short,
            status=ITEM_STATUS_QUEUED,
            error_message=None,
        )
        with self._lock:
            if item_id in self._active or any(entry == item_id for _k, entry in self._backlog):
                return False
            self._insert_backlog(item_id, str(info.get("published_at") or ""))
        self.events.emit(ev.QUEUE_UPDATED, id=item_id)
        self.drain()
        return True

    def adopt(self, item_id: str) -> bool:
        """Count an already-submitted id against the ceiling (client restart).

        Returns False when the id is already tracked or no slot is free.
        """
        with self._lock:
            if item_id in self._active or len(self._active) >= self._concurrency:
                return False
            self._active.add(item_id)
            return True

    def drain(self) -> list[str]:
        started = []
        while True:
            with self._lock:
                if len(self._active) >= self._concurrency or not self._backlog:
                    break
                _key, item_id = self._backlog.pop(0)
                self._active.add(item_id)
            started.append(item_id)
            self._start(item_id)
        return started

    def _start(self, item_id: str) -> None:
        self.records.upsert(item_id, status=ITEM_STATUS_DOWNLOADING, error_message=None)
        self.events.emit(ev.DOWNLOAD_STARTED, id=item_id)

        if self.is_connected is not None and not self.is_connected():
            self._fail(item_id, HOST_NOT_CONNECTED)
            return

        auth_context = None
        if self.auth_provider is not None:
            try:
                auth_context = self.auth_provider()
            except Exception:
                logger.warning("Auth context unavailable id=%s", item_id, exc_info=True)

        try:
            self.worker.submit(item_id, auth_context)
        except WorkerUnavailable as exc:
            logger.error("Submission failed id=%s error=%s", item_id, exc.message)
            self._fail(item_id, f"API error: {exc.message}")
            return

        logger.info("Download submitted id=%s", item_id)
        if self.on_work_started is not None:
            self.on_work_started()

    def _fail(self, item_id: str, message: str) -> None:
        self.records.upsert(item_id, status=ITEM_STATUS_ERROR, error_message=message)
        self.events.emit(ev.DOWNLOAD_ERROR, id=item_id, error=message)
        self.release(item_id)

    def release(self, item_id: str) -> bool:
        """Free the slot held by ``item_id`` and start whatever fits."""
        with self._lock:
            was_active = item_id in self._active
            self._active.discard(item_id)
        self.drain()
        return was_active

    def remove(self, item_id: str) -> bool:
        with self._lock:
            before = len(self._backlog)
            self._backlog = [entry for entry in self._backlog if entry[1] != item_id]
            removed = len(self._backlog) != before
        if removed:
            self.events.emit(ev.QUEUE_UPDATED, id=item_id)
        return removed

    def reset(self) -> None:
        with self._lock:
            self._backlog.clear()
            self._active.clear()
