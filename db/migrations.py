"""SQLite migrations for the client-side item catalog."""

from __future__ import annotations

import sqlite3


def ensure_items_table(conn: sqlite3.Connection) -> None:
    """Ensure the item record table and its indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS items (
            id TEXT PRIMARY KEY,
            title TEXT,
            channel_id TEXT,
            channel_name TEXT,
            published_at TEXT,
            is_short INTEGER NOT NULL DEFAULT 0,
            status TEXT,
            file_path TEXT,
            thumbnail_path TEXT,
            file_size INTEGER,
            duration INTEGER,
            width INTEGER,
            height INTEGER,
            description TEXT,
            error_message TEXT,
            watched INTEGER NOT NULL DEFAULT 0,
            downloaded_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_items_status ON items (status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_items_published_at ON items (published_at DESC)")
    conn.commit()


def ensure_client_state_table(conn: sqlite3.Connection) -> None:
    """Ensure the opaque key/value client state table exists."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS client_state (
            key TEXT PRIMARY KEY,
            value TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.commit()


def ensure_client_tables(conn: sqlite3.Connection) -> None:
    ensure_items_table(conn)
    ensure_client_state_table(conn)
