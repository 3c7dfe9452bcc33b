import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, TypedDict

from backend.config import DB_BUSY_TIMEOUT_SECONDS, DB_PATH

logger = logging.getLogger(__name__)


# Columns shared by accepted and archived rows, in insert order.
RECORD_COLUMNS: tuple[str, ...] = (
    "session_id",
    "subject_id",
    "given_name",
    "family_name",
    "client_lat",
    "client_lon",
    "client_ts",
    "verified_at",
    "distance_m",
    "device_id",
    "issuance_nonce",
    "claim_nonce",
    "client_version",
    "source",
    "override_reason",
)

REJECTED_COLUMNS: tuple[str, ...] = (
    "session_id",
    "subject_id",
    "given_name",
    "family_name",
    "client_lat",
    "client_lon",
    "client_ts",
    "received_at",
    "distance_m",
    "device_id",
    "issuance_nonce",
    "claim_nonce",
    "client_version",
    "token",
    "reason_code",
    "reason",
)


class SessionRow(TypedDict):
    session_id: str
    owner_id: str
    anchor_lat: float
    anchor_lon: float
    started_at: str
    ended_at: str | None
    is_active: bool


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Storage format: UTC, fixed microsecond precision, so text order is time order."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def connect_db():
    # IMMEDIATE: writers take the write lock up front, so concurrent claim
    # commits queue on the busy timeout instead of failing on lock upgrade.
    conn = sqlite3.connect(
        str(DB_PATH),
        timeout=DB_BUSY_TIMEOUT_SECONDS,
        isolation_level="IMMEDIATE",
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables():
    conn = connect_db()
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.executescript(
        """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        anchor_lat REAL NOT NULL,
        anchor_lon REAL NOT NULL,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        CHECK ((is_active = 1 AND ended_at IS NULL) OR (is_active = 0 AND ended_at IS NOT NULL))
    );
    CREATE INDEX IF NOT EXISTS idx_sessions_owner_active ON sessions(owner_id, is_active);

    CREATE TABLE IF NOT EXISTS qr_tokens (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        token TEXT NOT NULL,
        issued_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(session_id),
        UNIQUE(session_id, token)
    );
    CREATE INDEX IF NOT EXISTS idx_qr_tokens_expiry ON qr_tokens(session_id, expires_at);

    -- UNIQUE(session_id, device_id) is what closes the concurrent-claim race.
    CREATE TABLE IF NOT EXISTS accepted_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        given_name TEXT,
        family_name TEXT,
        client_lat REAL NOT NULL,
        client_lon REAL NOT NULL,
        client_ts TEXT NOT NULL,
        verified_at TEXT NOT NULL,
        distance_m REAL NOT NULL,
        device_id TEXT NOT NULL,
        issuance_nonce TEXT,
        claim_nonce TEXT,
        client_version TEXT,
        source TEXT NOT NULL DEFAULT 'scan',
        override_reason TEXT,
        FOREIGN KEY (session_id) REFERENCES sessions(session_id),
        UNIQUE(session_id, device_id)
    );

    -- Append-only. No FK: claims may name sessions that never existed.
    CREATE TABLE IF NOT EXISTS rejected_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT,
        subject_id TEXT,
        given_name TEXT,
        family_name TEXT,
        client_lat,
        client_lon,
        client_ts TEXT,
        received_at TEXT NOT NULL,
        distance_m REAL,
        device_id TEXT,
        issuance_nonce TEXT,
        claim_nonce TEXT,
        client_version TEXT,
        token TEXT,
        reason_code TEXT NOT NULL,
        reason TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_rejected_session ON rejected_records(session_id);

    CREATE TABLE IF NOT EXISTS archived_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        accepted_record_id INTEGER NOT NULL,
        session_id TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        given_name TEXT,
        family_name TEXT,
        client_lat REAL NOT NULL,
        client_lon REAL NOT NULL,
        client_ts TEXT NOT NULL,
        verified_at TEXT NOT NULL,
        distance_m REAL NOT NULL,
        device_id TEXT NOT NULL,
        issuance_nonce TEXT,
        claim_nonce TEXT,
        client_version TEXT,
        source TEXT NOT NULL,
        override_reason TEXT,
        archived_at TEXT NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(session_id),
        UNIQUE(accepted_record_id)
    );
    CREATE INDEX IF NOT EXISTS idx_archived_session ON archived_records(session_id);
    """
    )
    conn.commit()
    conn.close()


def _fetch_one(conn: sqlite3.Connection, query: str, params: tuple) -> sqlite3.Row | None:
    # fetchall() finalizes the statement so no read lock outlives the call.
    rows = conn.execute(query, params).fetchall()
    return rows[0] if rows else None


def _session_from_row(row: sqlite3.Row) -> SessionRow:
    return {
        "session_id": str(row["session_id"]),
        "owner_id": str(row["owner_id"]),
        "anchor_lat": float(row["anchor_lat"]),
        "anchor_lon": float(row["anchor_lon"]),
        "started_at": str(row["started_at"]),
        "ended_at": str(row["ended_at"]) if row["ended_at"] else None,
        "is_active": bool(row["is_active"]),
    }


# -----------------------------
# Sessions
# -----------------------------
def insert_session(owner_id: str, anchor_lat: float, anchor_lon: float, started_at: datetime) -> SessionRow:
    session_id = str(uuid.uuid4())
    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO sessions (session_id, owner_id, anchor_lat, anchor_lon, started_at, is_active)
            VALUES (?, ?, ?, ?, ?, 1)
            """,
            (session_id, owner_id, float(anchor_lat), float(anchor_lon), to_iso(started_at)),
        )
        conn.commit()
        row = _fetch_one(conn, "SELECT * FROM sessions WHERE session_id = ?", (session_id,))
    finally:
        conn.close()
    return _session_from_row(row)


def get_session(session_id: str, conn: sqlite3.Connection | None = None) -> SessionRow | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        row = _fetch_one(active_conn, "SELECT * FROM sessions WHERE session_id = ?", (session_id,))
    finally:
        if owns_conn:
            active_conn.close()
    return _session_from_row(row) if row else None


def get_active_session(session_id: str, conn: sqlite3.Connection | None = None) -> SessionRow | None:
    session = get_session(session_id, conn=conn)
    if session is None or not session["is_active"]:
        return None
    return session


def count_active_sessions(owner_id: str) -> int:
    conn = connect_db()
    try:
        row = _fetch_one(
            conn,
            "SELECT COUNT(1) FROM sessions WHERE owner_id = ? AND is_active = 1",
            (owner_id,),
        )
    finally:
        conn.close()
    return int(row[0] or 0)


def list_sessions_for_owner(owner_id: str) -> list[dict[str, Any]]:
    conn = connect_db()
    try:
        rows = conn.execute(
            """
            SELECT
                s.*,
                (SELECT COUNT(1) FROM accepted_records a WHERE a.session_id = s.session_id) AS valid_scans_count,
                (SELECT COUNT(1) FROM rejected_records r WHERE r.session_id = s.session_id) AS invalid_scans_count,
                (SELECT COUNT(1) FROM archived_records ar WHERE ar.session_id = s.session_id) AS archived_scans_count
            FROM sessions s
            WHERE s.owner_id = ?
            ORDER BY s.started_at DESC
            """,
            (owner_id,),
        ).fetchall()
    finally:
        conn.close()

    out: list[dict[str, Any]] = []
    for row in rows:
        item: dict[str, Any] = dict(_session_from_row(row))
        item["valid_scans_count"] = int(row["valid_scans_count"] or 0)
        item["invalid_scans_count"] = int(row["invalid_scans_count"] or 0)
        item["archived_scans_count"] = int(row["archived_scans_count"] or 0)
        out.append(item)
    return out


def close_session(session_id: str, *, ended_at: datetime) -> int | None:
    """
    Flip the session to ended, snapshot its accepted rows and revoke its tokens.

    Runs as one transaction. Archival and token revocation each sit in their
    own SAVEPOINT so a failure there is rolled back alone and the session is
    still closed. Returns the archived row count, or None when the session was
    not active anymore.
    """
    conn = connect_db()
    stamp = to_iso(ended_at)
    archived_count = 0
    try:
        cur = conn.execute(
            """
            UPDATE sessions
            SET is_active = 0,
                ended_at = ?
            WHERE session_id = ? AND is_active = 1
            """,
            (stamp, session_id),
        )
        if cur.rowcount == 0:
            conn.rollback()
            return None

        conn.execute("SAVEPOINT archive_records")
        try:
            columns = ", ".join(RECORD_COLUMNS)
            cur = conn.execute(
                f"""
                INSERT INTO archived_records (accepted_record_id, {columns}, archived_at)
                SELECT id, {columns}, ?
                FROM accepted_records
                WHERE session_id = ?
                ORDER BY id
                """,
                (stamp, session_id),
            )
            archived_count = max(0, cur.rowcount)
            conn.execute("RELEASE SAVEPOINT archive_records")
        except sqlite3.Error:
            logger.exception("Archiving accepted records failed for session %s", session_id)
            conn.execute("ROLLBACK TO SAVEPOINT archive_records")
            conn.execute("RELEASE SAVEPOINT archive_records")
            archived_count = 0

        conn.execute("SAVEPOINT revoke_tokens")
        try:
            conn.execute("DELETE FROM qr_tokens WHERE session_id = ?", (session_id,))
            conn.execute("RELEASE SAVEPOINT revoke_tokens")
        except sqlite3.Error:
            logger.exception("Revoking QR tokens failed for session %s", session_id)
            conn.execute("ROLLBACK TO SAVEPOINT revoke_tokens")
            conn.execute("RELEASE SAVEPOINT revoke_tokens")

        conn.commit()
        return archived_count
    finally:
        conn.close()


# -----------------------------
# QR token registry
# -----------------------------
def insert_token(session_id: str, token: str, *, issued_at: datetime, expires_at: datetime) -> None:
    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO qr_tokens (session_id, token, issued_at, expires_at)
            VALUES (?, ?, ?, ?)
            """,
            (session_id, token, to_iso(issued_at), to_iso(expires_at)),
        )
        conn.commit()
    finally:
        conn.close()


def delete_expired_tokens(session_id: str, now: datetime) -> int:
    conn = connect_db()
    try:
        cur = conn.execute(
            "DELETE FROM qr_tokens WHERE session_id = ? AND expires_at < ?",
            (session_id, to_iso(now)),
        )
        conn.commit()
        return max(0, cur.rowcount)
    finally:
        conn.close()


def count_tokens(session_id: str) -> int:
    conn = connect_db()
    try:
        row = _fetch_one(conn, "SELECT COUNT(1) FROM qr_tokens WHERE session_id = ?", (session_id,))
    finally:
        conn.close()
    return int(row[0] or 0)


def find_live_token(
    session_id: str,
    token: str,
    now: datetime,
    conn: sqlite3.Connection | None = None,
) -> bool:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        row = _fetch_one(
            active_conn,
            """
            SELECT id
            FROM qr_tokens
            WHERE session_id = ? AND token = ? AND expires_at >= ?
            LIMIT 1
            """,
            (session_id, token, to_iso(now)),
        )
    finally:
        if owns_conn:
            active_conn.close()
    return row is not None


# -----------------------------
# Accepted / rejected / archived records
# -----------------------------
def device_has_accepted_record(
    session_id: str,
    device_id: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        row = _fetch_one(
            active_conn,
            "SELECT id FROM accepted_records WHERE session_id = ? AND device_id = ? LIMIT 1",
            (session_id, device_id),
        )
    finally:
        if owns_conn:
            active_conn.close()
    return row is not None


def insert_accepted_record(record: dict[str, Any], conn: sqlite3.Connection | None = None) -> int | None:
    """
    Insert one accepted row while its session is still active.

    Returns the new row id, or None when the session is not active anymore.
    The activity check and the insert are one statement, so a concurrent
    ``close_session`` either archives the row or prevents it.
    Raises sqlite3.IntegrityError on a duplicate device.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    values = tuple(record.get(col) for col in RECORD_COLUMNS)
    placeholders = ", ".join("?" for _ in RECORD_COLUMNS)
    try:
        cur = active_conn.execute(
            f"""
            INSERT INTO accepted_records ({', '.join(RECORD_COLUMNS)})
            SELECT {placeholders}
            WHERE EXISTS (
                SELECT 1 FROM sessions WHERE session_id = ? AND is_active = 1
            )
            """,
            values + (record.get("session_id"),),
        )
        record_id = int(cur.lastrowid) if cur.rowcount == 1 else None
        active_conn.commit()
        return record_id
    except sqlite3.IntegrityError:
        active_conn.rollback()
        raise
    finally:
        if owns_conn:
            active_conn.close()


def insert_rejected_record(record: dict[str, Any]) -> int:
    conn = connect_db()
    values = tuple(record.get(col) for col in REJECTED_COLUMNS)
    placeholders = ", ".join("?" for _ in REJECTED_COLUMNS)
    try:
        cur = conn.execute(
            f"INSERT INTO rejected_records ({', '.join(REJECTED_COLUMNS)}) VALUES ({placeholders})",
            values,
        )
        conn.commit()
        return int(cur.lastrowid)
    finally:
        conn.close()


def _rows(query: str, params: tuple) -> list[dict[str, Any]]:
    conn = connect_db()
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()
    return [dict(row) for row in rows]


def get_accepted_records(session_id: str, *, newest_first: bool = False) -> list[dict[str, Any]]:
    order = "DESC" if newest_first else "ASC"
    return _rows(
        f"SELECT * FROM accepted_records WHERE session_id = ? ORDER BY verified_at {order}, id {order}",
        (session_id,),
    )


def get_rejected_records(session_id: str) -> list[dict[str, Any]]:
    return _rows(
        "SELECT * FROM rejected_records WHERE session_id = ? ORDER BY received_at DESC, id DESC",
        (session_id,),
    )


def get_archived_records(session_id: str) -> list[dict[str, Any]]:
    return _rows(
        "SELECT * FROM archived_records WHERE session_id = ? ORDER BY verified_at ASC, id ASC",
        (session_id,),
    )
