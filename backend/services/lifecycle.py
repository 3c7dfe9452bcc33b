"""
Session lifecycle: Created -> Active -> Ended (terminal).

All state lives in storage; the "one active session per owner" rule is a
query-time check, so any number of workers can serve these calls.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any

from backend import qr_tokens
from backend.config import ALLOW_CONCURRENT_SESSIONS, QR_ROTATION_SECONDS, QR_VALIDITY_SECONDS
from backend.geo import is_valid_coordinate
from backend.services.errors import (
    ActiveSessionExists,
    InvalidCoordinates,
    SessionAccessDenied,
    SessionNotActive,
)
from database.db import (
    SessionRow,
    close_session,
    count_active_sessions,
    delete_expired_tokens,
    get_active_session,
    get_session,
    insert_session,
    insert_token,
    list_sessions_for_owner,
    utc_now,
)

logger = logging.getLogger(__name__)


def get_owned_session(owner_id: str, session_id: str) -> SessionRow:
    session = get_session(session_id)
    if session is None or session["owner_id"] != owner_id:
        raise SessionAccessDenied(session_id)
    return session


def start_session(
    owner_id: str,
    anchor_lat,
    anchor_lon,
    *,
    now: datetime | None = None,
) -> SessionRow:
    if not is_valid_coordinate(anchor_lat, anchor_lon):
        raise InvalidCoordinates("Invalid GPS coordinates")

    if not ALLOW_CONCURRENT_SESSIONS and count_active_sessions(owner_id) > 0:
        raise ActiveSessionExists(
            "You already have an active session. Please end it before starting a new one."
        )

    session = insert_session(owner_id, anchor_lat, anchor_lon, now or utc_now())
    logger.info("Session %s started by owner %s", session["session_id"], owner_id)
    return session


def end_session(owner_id: str, session_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    session = get_owned_session(owner_id, session_id)
    if not session["is_active"]:
        raise SessionNotActive("Session already ended")

    archived_count = close_session(session_id, ended_at=now or utc_now())
    if archived_count is None:
        # Lost a race with a concurrent end request.
        raise SessionNotActive("Session already ended")

    logger.info("Session %s ended, %d accepted records archived", session_id, archived_count)
    return {"session_id": session_id, "archived_count": archived_count}


def _cleanup_expired_tokens(session_id: str, now: datetime) -> None:
    try:
        removed = delete_expired_tokens(session_id, now)
    except sqlite3.Error:
        logger.exception("Expired token cleanup failed for session %s", session_id)
        return
    if removed:
        logger.debug("Removed %d expired tokens for session %s", removed, session_id)


def issue_token(session_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    """
    Issue the next rotating token for an active session.

    The returned ``payload`` is what the display encodes into the QR code and
    what a claimant echoes back verbatim.
    """
    issued_at = now or utc_now()
    if get_active_session(session_id) is None:
        raise SessionNotActive("Session not found or inactive")

    token, expires_at = qr_tokens.issue(session_id, issued_at)
    insert_token(session_id, token, issued_at=issued_at, expires_at=expires_at)
    _cleanup_expired_tokens(session_id, issued_at)

    return {
        "payload": {
            "session_id": session_id,
            "token": token,
            "issuance_nonce": qr_tokens.new_issuance_nonce(),
            "timestamp": qr_tokens.token_timestamp_ms(token),
        },
        "validity_seconds": QR_VALIDITY_SECONDS,
        "rotation_interval_seconds": QR_ROTATION_SECONDS,
        "expires_at": expires_at.isoformat(),
    }


def list_sessions(owner_id: str) -> list[dict[str, Any]]:
    return list_sessions_for_owner(owner_id)
