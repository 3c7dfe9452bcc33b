"""
Manual adjustment: the session owner records a subject directly.

This is a trust escape hatch for pipeline false negatives. Token, timestamp
and distance checks do not apply; the device-dedup constraint still does.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

from backend import qr_tokens
from backend.services.errors import SessionNotActive
from backend.services.lifecycle import get_owned_session
from backend.services.replay_guard import commit_accepted
from database.db import to_iso, utc_now

logger = logging.getLogger(__name__)

MANUAL_DEVICE_PREFIX = "manual-override-"
MANUAL_CLIENT_VERSION = "manual-override"


def _manual_device_id() -> str:
    return f"{MANUAL_DEVICE_PREFIX}{uuid.uuid4().hex}"


def add_manual_record(
    owner_id: str,
    session_id: str,
    *,
    subject_id: str,
    given_name: str,
    family_name: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    session = get_owned_session(owner_id, session_id)
    if not session["is_active"]:
        raise SessionNotActive("Session already ended")

    stamp = to_iso(now or utc_now())
    nonce = qr_tokens.new_issuance_nonce()
    device_id = _manual_device_id()
    record = {
        "session_id": session_id,
        "subject_id": subject_id,
        "given_name": given_name,
        "family_name": family_name,
        "client_lat": session["anchor_lat"],
        "client_lon": session["anchor_lon"],
        "client_ts": stamp,
        "verified_at": stamp,
        "distance_m": 0.0,
        "device_id": device_id,
        "issuance_nonce": nonce,
        "claim_nonce": f"{MANUAL_DEVICE_PREFIX}{nonce}",
        "client_version": MANUAL_CLIENT_VERSION,
        "source": "manual",
        "override_reason": reason,
    }
    record_id = commit_accepted(record)
    logger.info(
        "Manual record %s added to session %s for subject %s by owner %s",
        record_id,
        session_id,
        subject_id,
        owner_id,
    )
    return {
        "session_id": session_id,
        "subject_id": subject_id,
        "given_name": given_name,
        "family_name": family_name,
        "device_id": device_id,
    }
