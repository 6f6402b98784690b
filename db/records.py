"""Persistence for client-owned item records and opaque client state."""

from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from db.migrations import ensure_client_tables
from engine.paths import DB_PATH

_DEFAULT_DB_ENV_KEY = "VIDSTASH_DB_PATH"

ITEM_STATUS_QUEUED = "queued"
ITEM_STATUS_DOWNLOADING = "downloading"
ITEM_STATUS_DONE = "done"
ITEM_STATUS_ERROR = "error"
ITEM_STATUSES = (ITEM_STATUS_QUEUED, ITEM_STATUS_DOWNLOADING, ITEM_STATUS_DONE, ITEM_STATUS_ERROR)

ITEM_FIELDS = (
    "title",
    "channel_id",
    "channel_name",
    "published_at",
    "is_short",
    "status",
    "file_path",
    "thumbnail_path",
    "file_size",
    "duration",
    "width",
    "height",
    "description",
    "error_message",
    "watched",
    "downloaded_at",
)
_BOOL_FIELDS = ("is_short", "watched")


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _resolve_db_path() -> str:
    return os.environ.get(_DEFAULT_DB_ENV_KEY, str(DB_PATH))


def _connect(db_path: str | None = None) -> sqlite3.Connection:
    path = db_path or _resolve_db_path()
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    ensure_client_tables(conn)
    return conn


def _row_to_record(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    record = dict(row)
    for field in _BOOL_FIELDS:
        record[field] = bool(record.get(field))
    return record


class ItemRecordStore:
    """One row per item id; updates merge into the existing row."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or _resolve_db_path()
        conn = _connect(self.db_path)
        conn.close()

    def _connect(self) -> sqlite3.Connection:
        return _connect(self.db_path)

    def get(self, item_id: str) -> dict[str, Any] | None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM items WHERE id=?", (item_id,))
            return _row_to_record(cur.fetchone())
        finally:
            conn.close()

    def upsert(self, item_id: str, **fields: Any) -> dict[str, Any]:
        """Insert or partially update ``item_id``; only the given columns change."""
        if not item_id:
            raise ValueError("item_id is required")
        unknown = sorted(set(fields) - set(ITEM_FIELDS))
        if unknown:
            raise ValueError(f"unknown item fields: {', '.join(unknown)}")
        status = fields.get("status")
        if status is not None and status not in ITEM_STATUSES:
            raise ValueError(f"unsupported item status: {status}")

        values = {
            key: (int(bool(value)) if key in _BOOL_FIELDS else value)
            for key, value in fields.items()
        }
        now = utc_now()
        columns = ["id", "created_at", "updated_at", *values.keys()]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{key}=excluded.{key}" for key in [*values.keys(), "updated_at"])
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                INSERT INTO items ({", ".join(columns)})
                VALUES ({placeholders})
                ON CONFLICT(id) DO UPDATE SET {updates}
                """,
                (item_id, now, now, *values.values()),
            )
            conn.commit()
            cur.execute("SELECT * FROM items WHERE id=?", (item_id,))
            return _row_to_record(cur.fetchone())
        finally:
            conn.close()

    def delete(self, item_id: str) -> bool:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM items WHERE id=?", (item_id,))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def clear(self) -> int:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("DELETE FROM items")
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def list(self, status: str | None = None) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            if status:
                cur.execute(
                    "SELECT * FROM items WHERE status=? ORDER BY published_at DESC, id ASC",
                    (status,),
                )
            else:
                cur.execute("SELECT * FROM items ORDER BY published_at DESC, id ASC")
            return [_row_to_record(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def status_counts(self) -> dict[str, int]:
        counts = {status: 0 for status in ITEM_STATUSES}
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT status, COUNT(*) AS n FROM items GROUP BY status")
            for row in cur.fetchall():
                if row["status"] in counts:
                    counts[row["status"]] = int(row["n"])
            return counts
        finally:
            conn.close()

    def watched_downloaded_before(self, cutoff_iso: str) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT * FROM items
                WHERE watched=1 AND downloaded_at IS NOT NULL AND downloaded_at < ?
                ORDER BY downloaded_at ASC
                """,
                (cutoff_iso,),
            )
            return [_row_to_record(row) for row in cur.fetchall()]
        finally:
            conn.close()


class ClientStateStore:
    """Opaque JSON key/value state: settings, last poll results, and similar."""

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or _resolve_db_path()
        conn = _connect(self.db_path)
        conn.close()

    def get(self, key: str, default: Any = None) -> Any:
        conn = _connect(self.db_path)
        try:
            cur = conn.cursor()
            cur.execute("SELECT value FROM client_state WHERE key=?", (key,))
            row = cur.fetchone()
        finally:
            conn.close()
        if row is None or row["value"] is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            return default

    def set(self, key: str, value: Any) -> None:
        conn = _connect(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO client_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, json.dumps(value), utc_now()),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = _connect(self.db_path)
        try:
            conn.execute("DELETE FROM client_state WHERE key=?", (key,))
            conn.commit()
        finally:
            conn.close()
