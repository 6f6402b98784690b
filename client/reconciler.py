"""Applies worker snapshots to the item records exactly once per terminal state."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from client import events as ev
from config.settings import LOST_JOB_POLL_THRESHOLD
from db.records import ITEM_STATUS_DONE, ITEM_STATUS_ERROR, utc_now
from engine.errors import LostJob, WorkerUnavailable
from engine.log import log_event

logger = logging.getLogger(__name__)

_IN_FLIGHT = ("queued", "downloading")
_TERMINAL = (ITEM_STATUS_DONE, ITEM_STATUS_ERROR)


class Reconciler:
    """Turns at-least-once polling into exactly-once record updates.

    ``_applied`` is the shadow map: id -> terminal status already written to
    the record store. Repeat observations only re-send the ack. Ids the
    client believes are in flight but that vanish from consecutive snapshots
    are failed as lost once ``lost_threshold`` polls have missed them.
    """

    def __init__(
        self,
        records,
        worker,
        controller,
        events,
        *,
        lost_threshold: int = LOST_JOB_POLL_THRESHOLD,
        set_polling: Callable[[bool], None] | None = None,
        on_complete: Callable[[str], None] | None = None,
    ) -> None:
        self.records = records
        self.worker = worker
        self.controller = controller
        self.events = events
        self.lost_threshold = max(1, int(lost_threshold))
        self.set_polling = set_polling
        self.on_complete = on_complete
        self._lock = threading.RLock()
        self._applied: dict[str, str] = {}
        self._missing: dict[str, int] = {}
        self._cancelled: set[str] = set()
        self._polling = False

    @property
    def polling(self) -> bool:
        return self._polling

    def ensure_polling(self) -> None:
        with self._lock:
            if self._polling:
                return
            self._polling = True
            if self.set_polling is not None:
                self.set_polling(True)

    def stop_polling(self) -> None:
        with self._lock:
            if not self._polling:
                return
            self._polling = False
            if self.set_polling is not None:
                self.set_polling(False)

    def _stop_if_idle(self) -> None:
        with self._lock:
            if self.controller.has_outstanding():
                return
            self.stop_polling()
        # Work started while the poll job was being removed must not run unobserved.
        if self.controller.has_outstanding():
            self.ensure_polling()

    def mark_cancelled(self, item_id: str) -> None:
        with self._lock:
            self._cancelled.add(item_id)
            self._missing.pop(item_id, None)
            self._applied.pop(item_id, None)

    def forget(self, item_id: str) -> None:
        with self._lock:
            self._cancelled.discard(item_id)
            self._missing.pop(item_id, None)
            self._applied.pop(item_id, None)

    def poll_once(self) -> bool:
        """Fetch one snapshot and apply it; returns False if the worker was unreachable."""
        try:
            snapshot = self.worker.downloads()
        except WorkerUnavailable as exc:
            logger.warning("Download poll failed: %s", exc.message)
            return False

        for item_id, job in snapshot.items():
            if isinstance(job, dict):
                self._observe(item_id, job)

        self._check_missing(snapshot)

        with self._lock:
            for item_id in list(self._applied):
                if item_id not in snapshot:
                    self._applied.pop(item_id, None)
            for item_id in list(self._cancelled):
                if item_id not in snapshot:
                    self._cancelled.discard(item_id)

        self._stop_if_idle()
        return True

    def _observe(self, item_id: str, job: dict) -> None:
        status = job.get("status")
        with self._lock:
            self._missing.pop(item_id, None)
            cancelled = item_id in self._cancelled
            already = self._applied.get(item_id) == status

        if status in _IN_FLIGHT:
            if cancelled:
                return
            self.events.emit(
                ev.DOWNLOAD_PROGRESS,
                id=item_id,
                status=status,
                percent=job.get("percent", 0),
                speed=job.get("speed"),
                eta=job.get("eta"),
            )
            return

        if status not in _TERMINAL:
            logger.debug("Ignoring unknown job status id=%s status=%s", item_id, status)
            return

        if cancelled:
            log_event(logging.INFO, "late_report_discarded", id=item_id, status=status)
            self._ack(item_id)
            return

        if already:
            self._ack(item_id)
            return

        with self._lock:
            if self._applied.get(item_id) == status:
                applied_now = False
            else:
                self._applied[item_id] = status
                applied_now = True
        if applied_now:
            try:
                if self.records.get(item_id) is None:
                    logger.warning("Terminal report for unknown item id=%s", item_id)
                elif status == ITEM_STATUS_DONE:
                    self._apply_done(item_id, job)
                else:
                    self._apply_error(item_id, job.get("error") or "Download failed")
            except Exception:
                # Unacked, so the worker keeps reporting it and the next poll retries.
                with self._lock:
                    self._applied.pop(item_id, None)
                raise
        self._ack(item_id)
        if applied_now:
            self.controller.release(item_id)
            if status == ITEM_STATUS_DONE and self.on_complete is not None:
                self.on_complete(item_id)

    def _apply_done(self, item_id: str, job: dict) -> None:
        record = self.records.upsert(
            item_id,
            status=ITEM_STATUS_DONE,
            file_path=job.get("filePath"),
            thumbnail_path=job.get("thumbnailPath"),
            file_size=job.get("fileSize"),
            duration=job.get("duration"),
            description=job.get("description"),
            downloaded_at=utc_now(),
            error_message=None,
        )
        logger.info("Download complete id=%s path=%s", item_id, job.get("filePath"))
        self.events.emit(ev.DOWNLOAD_COMPLETE, id=item_id, video=record)

    def _apply_error(self, item_id: str, message: str) -> None:
        self.records.upsert(item_id, status=ITEM_STATUS_ERROR, error_message=message)
        logger.error("Download failed id=%s error=%s", item_id, message)
        self.events.emit(ev.DOWNLOAD_ERROR, id=item_id, error=message)

    def _ack(self, item_id: str) -> None:
        try:
            self.worker.ack(item_id)
        except WorkerUnavailable as exc:
            logger.warning("Ack failed id=%s error=%s; retrying on next poll", item_id, exc.message)

    def _check_missing(self, snapshot: dict) -> None:
        lost = []
        with self._lock:
            tracked = set(self.controller.active_ids())
            for item_id in list(self._missing):
                if item_id not in tracked:
                    self._missing.pop(item_id, None)
            for item_id in tracked:
                if item_id in snapshot or item_id in self._cancelled:
                    continue
                count = self._missing.get(item_id, 0) + 1
                if count >= self.lost_threshold:
                    self._missing.pop(item_id, None)
                    lost.append(item_id)
                else:
                    self._missing[item_id] = count
        for item_id in lost:
            message = LostJob().message
            log_event(logging.WARNING, "job_lost", id=item_id, polls=self.lost_threshold)
            self._apply_error(item_id, message)
            self.controller.release(item_id)
