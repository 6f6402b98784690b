"""Database helpers for the Vidstash client."""

from db.records import ClientStateStore, ItemRecordStore

__all__ = ["ClientStateStore", "ItemRecordStore"]
