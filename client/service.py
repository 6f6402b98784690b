"""Client wiring: record store, worker client, queue, reconciler, monitor and scheduler."""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from client import events as ev
from client.api_client import WorkerClient
from client.connection import LAST_POLL_KEY, ConnectionMonitor
from client.events import EventBus
from client.feeds import FeedPoller
from client.queue import QueueController
from client.reconciler import Reconciler
from config.settings import normalize_settings, validate_settings
from db.records import (
    ITEM_STATUS_DOWNLOADING,
    ITEM_STATUS_ERROR,
    ITEM_STATUS_QUEUED,
    ClientStateStore,
    ItemRecordStore,
)
from engine.errors import JobCancelled, WorkerUnavailable
from engine.log import log_event

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
LAST_CLEANUP_KEY = "last_cleanup"

CHECK_CONNECTION_JOB_ID = "check-connection"
POLL_FEEDS_JOB_ID = "poll-feeds"
POLL_DOWNLOADS_JOB_ID = "poll-downloads"


def empty_feed_source(channel):
    logger.debug("No feed source configured; channel=%s yields nothing", channel.get("id"))
    return []


def _iso(dt):
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()


class ArchiveClient:
    def __init__(
        self,
        *,
        db_path=None,
        records=None,
        state=None,
        worker=None,
        scheduler=None,
        events=None,
        feed_source=None,
        shorts_detector=None,
        auth_provider=None,
        dispatch=None,
    ):
        self.records = records if records is not None else ItemRecordStore(db_path)
        self.state = state if state is not None else ClientStateStore(self.records.db_path)
        self.settings = self.load_settings()
        self.worker = worker if worker is not None else WorkerClient(self.settings["worker_url"])
        self.scheduler = scheduler if scheduler is not None else BackgroundScheduler(timezone="UTC")
        self.events = events if events is not None else EventBus()
        self._dispatch_fn = dispatch
        self._lifecycle_lock = threading.Lock()
        self._started = False

        self.monitor = ConnectionMonitor(
            self.worker,
            self.events,
            self.state,
            connected_interval=self.settings["probe_connected_seconds"],
            disconnected_interval=self.settings["probe_disconnected_seconds"],
            reschedule=self._reschedule_connection_check,
            initial_pull=self.poll_feeds,
        )
        self.controller = QueueController(
            self.records,
            self.worker,
            self.events,
            concurrency=self.settings["concurrency"],
            shorts_detector=shorts_detector,
            auth_provider=auth_provider or self._read_cookies,
            is_connected=lambda: self.monitor.connected,
            on_work_started=self._on_work_started,
            on_enqueue=self._on_enqueue,
        )
        self.reconciler = Reconciler(
            self.records,
            self.worker,
            self.controller,
            self.events,
            set_polling=self._set_download_polling,
            on_complete=self._on_download_complete,
        )
        self.feeds = FeedPoller(
            self.controller,
            self.state,
            feed_source=feed_source or empty_feed_source,
            settings_provider=lambda: self.settings,
            is_connected=lambda: self.monitor.connected,
        )

    # Settings

    def load_settings(self):
        return normalize_settings(self.state.get(SETTINGS_KEY))

    def update_settings(self, changes):
        errors = validate_settings(changes)
        if errors:
            raise ValueError("; ".join(errors))
        merged = normalize_settings({**self.settings, **changes})
        self.state.set(SETTINGS_KEY, merged)
        previous = self.settings
        self.settings = merged
        self.controller.set_concurrency(merged["concurrency"])
        self.monitor.connected_interval = merged["probe_connected_seconds"]
        self.monitor.disconnected_interval = merged["probe_disconnected_seconds"]
        if merged["poll_interval_minutes"] != previous["poll_interval_minutes"]:
            self._schedule_feed_poll()
        logger.info("Settings updated keys=%s", ",".join(sorted(changes)))
        return merged

    def _read_cookies(self):
        path = self.settings.get("cookies_file")
        if not path or not os.path.isfile(path):
            return None
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read() or None

    # Scheduler plumbing

    def _dispatch(self, func, *args):
        if self._dispatch_fn is not None:
            self._dispatch_fn(func, *args)
            return
        if self.scheduler.running:
            self.scheduler.add_job(
                func,
                args=list(args),
                id=f"dispatch_{uuid4()}",
                replace_existing=False,
                misfire_grace_time=30,
            )
            return
        func(*args)

    def _reschedule_connection_check(self, seconds):
        if self.scheduler.get_job(CHECK_CONNECTION_JOB_ID):
            self.scheduler.reschedule_job(
                CHECK_CONNECTION_JOB_ID,
                trigger=IntervalTrigger(seconds=seconds),
            )
            logger.info("Connection probe interval now %ss", seconds)

    def _schedule_feed_poll(self):
        self.scheduler.add_job(
            self.poll_feeds,
            trigger=IntervalTrigger(minutes=self.settings["poll_interval_minutes"]),
            id=POLL_FEEDS_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )

    def _set_download_polling(self, enabled):
        if enabled:
            self.scheduler.add_job(
                self.reconciler.poll_once,
                trigger=IntervalTrigger(seconds=self.settings["download_poll_seconds"]),
                id=POLL_DOWNLOADS_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=5,
            )
        elif self.scheduler.get_job(POLL_DOWNLOADS_JOB_ID):
            self.scheduler.remove_job(POLL_DOWNLOADS_JOB_ID)

    def _on_work_started(self):
        self.reconciler.ensure_polling()

    def _on_enqueue(self, item_id):
        self.reconciler.forget(item_id)

    def _on_download_complete(self, _item_id):
        self.cleanup_old_videos()

    def _delete_artifacts(self, file_path, thumbnail_path):
        try:
            deleted = self.worker.delete_files(file_path, thumbnail_path)
        except WorkerUnavailable as exc:
            logger.warning("Artifact delete failed file=%s error=%s", file_path, exc.message)
            return
        logger.info("Artifacts deleted count=%s", len(deleted))

    def _request_artifact_delete(self, record):
        if record and (record.get("file_path") or record.get("thumbnail_path")):
            self._dispatch(self._delete_artifacts, record.get("file_path"), record.get("thumbnail_path"))
            return True
        return False

    # Lifecycle

    def start(self):
        with self._lifecycle_lock:
            if self._started:
                return
            self._started = True
        self.check_connection()
        self._restore_outstanding()
        self.scheduler.add_job(
            self.check_connection,
            trigger=IntervalTrigger(seconds=self.monitor.interval),
            id=CHECK_CONNECTION_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        self._schedule_feed_poll()
        self.scheduler.start()
        logger.info("Archive client started worker=%s", self.settings["worker_url"])

    def stop(self):
        with self._lifecycle_lock:
            if not self._started:
                return
            self._started = False
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.worker.close()
        logger.info("Archive client stopped")

    def _stop_worker_run(self, item_id):
        try:
            self.worker.cancel(item_id)
        except WorkerUnavailable as exc:
            logger.warning("Cancel request failed id=%s error=%s", item_id, exc.message)

    def _restore_outstanding(self):
        adopted = 0
        deferred = 0
        for record in self.records.list(status=ITEM_STATUS_DOWNLOADING):
            if self.controller.is_active(record["id"]):
                continue
            if self.controller.adopt(record["id"]):
                adopted += 1
            else:
                # No free slot under the current ceiling: stop the run and wait in the backlog.
                self._stop_worker_run(record["id"])
                self.records.upsert(record["id"], status=ITEM_STATUS_QUEUED)
                deferred += 1
        # Queued records stay queued while offline; the next feed poll picks them up.
        if self.monitor.connected:
            for record in self.records.list(status=ITEM_STATUS_QUEUED):
                self.controller.enqueue(record)
        if adopted or deferred:
            log_event(logging.INFO, "downloads_adopted", count=adopted, deferred=deferred)
        if self.controller.has_outstanding():
            self.reconciler.ensure_polling()

    # Operations

    def check_connection(self):
        return self.monitor.check()

    def poll_feeds(self):
        return self.feeds.poll()

    def poll_downloads(self):
        return self.reconciler.poll_once()

    def enqueue(self, info):
        return self.controller.enqueue(info)

    def cancel_download(self, item_id):
        record = self.records.get(item_id)
        was_active = self.controller.is_active(item_id) or (
            record is not None and record.get("status") == ITEM_STATUS_DOWNLOADING
        )
        self.reconciler.mark_cancelled(item_id)
        self.controller.remove(item_id)
        if record is not None:
            self.records.upsert(
                item_id,
                status=ITEM_STATUS_ERROR,
                error_message=JobCancelled().message,
            )
            self.events.emit(ev.VIDEO_UPDATED, id=item_id)
        if was_active:
            self._stop_worker_run(item_id)
            self.controller.release(item_id)
        log_event(logging.INFO, "download_cancelled", id=item_id, was_active=was_active)
        return True

    def mark_watched(self, item_id, watched=True):
        if self.records.get(item_id) is None:
            return False
        self.records.upsert(item_id, watched=bool(watched))
        self.events.emit(ev.VIDEO_UPDATED, id=item_id)
        return True

    def delete_video(self, item_id):
        record = self.records.get(item_id)
        deleted = self.records.delete(item_id)
        self._request_artifact_delete(record)
        self.events.emit(ev.VIDEO_DELETED, id=item_id)
        return deleted

    def disk_usage(self):
        try:
            return self.worker.disk_usage()
        except WorkerUnavailable as exc:
            logger.debug("Disk usage unavailable: %s", exc.message)
            return 0

    def status(self):
        return {
            "connected": self.monitor.connected,
            "queue_length": self.controller.queue_length(),
            "active": self.controller.active_count(),
            "counts": self.records.status_counts(),
            "last_poll": self.state.get(LAST_POLL_KEY),
            "last_cleanup": self.state.get(LAST_CLEANUP_KEY),
        }

    def clear_and_redownload(self):
        for item_id in self.controller.active_ids():
            self.reconciler.mark_cancelled(item_id)
            self._stop_worker_run(item_id)
        self.controller.reset()
        for record in self.records.list():
            self._request_artifact_delete(record)
        cleared = self.records.clear()
        log_event(logging.WARNING, "catalog_cleared", records=cleared)
        self.events.emit(ev.QUEUE_UPDATED)
        return self.poll_feeds()

    def cleanup_old_videos(self, now=None):
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.settings["cleanup_after_days"])
        cleaned = 0
        for record in self.records.watched_downloaded_before(_iso(cutoff)):
            self._request_artifact_delete(record)
            if self.records.delete(record["id"]):
                cleaned += 1
                self.events.emit(ev.VIDEO_DELETED, id=record["id"])
        self.state.set(LAST_CLEANUP_KEY, {"time": _iso(now), "cleaned": cleaned})
        if cleaned:
            logger.info("Cleaned up %s old watched videos", cleaned)
        return cleaned
