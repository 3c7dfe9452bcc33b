"""
Device dedup: one accepted claim per (session_id, device_id).

``is_device_recorded`` is only a fast path. Correctness rests on the
UNIQUE(session_id, device_id) constraint of ``accepted_records``, which
``commit_accepted`` translates into ``DeviceAlreadyRecorded``. The insert
also only lands while the session is active; otherwise ``SessionNotActive``.
"""

import sqlite3
from typing import Any

from backend.services.errors import DeviceAlreadyRecorded, SessionNotActive
from database.db import device_has_accepted_record, insert_accepted_record


def is_device_recorded(session_id: str, device_id: str, conn: sqlite3.Connection | None = None) -> bool:
    return device_has_accepted_record(session_id, device_id, conn=conn)


def commit_accepted(record: dict[str, Any], conn: sqlite3.Connection | None = None) -> int:
    try:
        record_id = insert_accepted_record(record, conn=conn)
    except sqlite3.IntegrityError as exc:
        if "UNIQUE" not in str(exc).upper():
            raise
        raise DeviceAlreadyRecorded(
            f"Device {record.get('device_id')!r} already recorded for session {record.get('session_id')!r}"
        ) from exc
    if record_id is None:
        raise SessionNotActive(f"Session {record.get('session_id')!r} ended before the record was stored")
    return record_id
