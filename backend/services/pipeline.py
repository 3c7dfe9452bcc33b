"""
Scan validation pipeline.

Turns a raw attendance claim into an accepted or rejected verdict. Checks run
in a fixed order and the first failure wins:

    1. completeness          MISSING_FIELDS
    2. coordinate format     INVALID_GPS
    3. session active        SESSION_INACTIVE
    4. device dedup          DEVICE_ALREADY_RECORDED (advisory)
    5. token format / age    TOKEN_INVALID
    6. token registry        TOKEN_NOT_FOUND
    7. timestamp skew        CLOCK_SKEW
    8. geodesic distance     TOO_FAR
    9. commit                DEVICE_ALREADY_RECORDED (constraint)
                             SESSION_INACTIVE (session closed meanwhile)

Rejections are values, never exceptions. Every rejection is written to the
rejection log best-effort, after the main connection is released. Storage
failures on the main path propagate as ``sqlite3.Error``.

The claim nonce is stored for audit only. It is not a gate: many claimants
legitimately scan the same displayed token.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Literal, TypedDict

from backend import qr_tokens
from backend.config import GPS_TOLERANCE_METERS, QR_VALIDITY_SECONDS, TIMESTAMP_TOLERANCE_SECONDS
from backend.geo import haversine_m, is_valid_coordinate
from backend.services.errors import DeviceAlreadyRecorded, SessionNotActive
from backend.services.replay_guard import commit_accepted, is_device_recorded
from database.db import (
    connect_db,
    find_live_token,
    get_active_session,
    insert_rejected_record,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

ReasonCode = Literal[
    "MISSING_FIELDS",
    "INVALID_GPS",
    "SESSION_INACTIVE",
    "DEVICE_ALREADY_RECORDED",
    "TOKEN_INVALID",
    "TOKEN_NOT_FOUND",
    "CLOCK_SKEW",
    "TOO_FAR",
]

REQUIRED_TEXT_FIELDS: tuple[str, ...] = (
    "session_id",
    "token",
    "client_ts",
    "device_id",
    "claim_nonce",
    "subject_id",
    "given_name",
    "family_name",
)
REQUIRED_COORDINATE_FIELDS: tuple[str, ...] = ("client_lat", "client_lon")
OPTIONAL_TEXT_FIELDS: tuple[str, ...] = ("issuance_nonce", "client_version")

MSG_ACCEPTED = "Attendance recorded successfully"
MSG_DEVICE_RECORDED = "This device has already submitted a valid scan for this session"
MSG_SESSION_INACTIVE = "Session not found or inactive"


class ClaimVerdict(TypedDict):
    valid: bool
    reason_code: ReasonCode | None
    message: str
    distance_m: float | None


def _accept(distance_m: float) -> ClaimVerdict:
    return {"valid": True, "reason_code": None, "message": MSG_ACCEPTED, "distance_m": distance_m}


def _reject(code: ReasonCode, message: str, distance_m: float | None = None) -> ClaimVerdict:
    return {"valid": False, "reason_code": code, "message": message, "distance_m": distance_m}


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _storable(value: Any) -> Any:
    if value is None or isinstance(value, (str, float)):
        return value
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int):
        # sqlite INTEGER is 64-bit
        return value if -(2**63) <= value < 2**63 else str(value)
    return repr(value)


def normalize_claim(raw: dict[str, Any]) -> dict[str, Any]:
    """Pick the known claim fields out of a request body."""
    claim: dict[str, Any] = {}
    for name in REQUIRED_TEXT_FIELDS + OPTIONAL_TEXT_FIELDS:
        claim[name] = _text(raw.get(name))
    # numeric client_ts (epoch milliseconds) is accepted as well
    if isinstance(raw.get("client_ts"), (int, float)) and not isinstance(raw.get("client_ts"), bool):
        claim["client_ts"] = raw["client_ts"]
    for name in REQUIRED_COORDINATE_FIELDS:
        claim[name] = raw.get(name)
    return claim


def parse_client_ts(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            if not math.isfinite(value):
                return None
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _missing_fields(claim: dict[str, Any]) -> list[str]:
    missing = [name for name in REQUIRED_TEXT_FIELDS if claim.get(name) is None]
    missing.extend(name for name in REQUIRED_COORDINATE_FIELDS if claim.get(name) is None)
    return missing


def _evaluate(claim: dict[str, Any], received_at: datetime) -> ClaimVerdict:
    missing = _missing_fields(claim)
    if missing:
        logger.debug("Claim missing fields: %s", ", ".join(missing))
        return _reject("MISSING_FIELDS", "Missing required fields")

    lat, lon = claim["client_lat"], claim["client_lon"]
    if not is_valid_coordinate(lat, lon):
        return _reject("INVALID_GPS", "Invalid GPS coordinates format")

    session_id = claim["session_id"]
    device_id = claim["device_id"]
    token = claim["token"]

    conn = connect_db()
    try:
        session = get_active_session(session_id, conn=conn)
        if session is None:
            return _reject("SESSION_INACTIVE", MSG_SESSION_INACTIVE)

        if is_device_recorded(session_id, device_id, conn=conn):
            return _reject("DEVICE_ALREADY_RECORDED", MSG_DEVICE_RECORDED)

        if not qr_tokens.check_format(token, received_at, QR_VALIDITY_SECONDS):
            return _reject("TOKEN_INVALID", "Invalid or expired QR token")

        if not find_live_token(session_id, token, received_at, conn=conn):
            return _reject("TOKEN_NOT_FOUND", "QR token not found or expired")

        client_dt = parse_client_ts(claim["client_ts"])
        if client_dt is None:
            return _reject("CLOCK_SKEW", "Clock synchronization issue. Invalid client timestamp")
        skew = abs((received_at - client_dt).total_seconds())
        if skew > TIMESTAMP_TOLERANCE_SECONDS:
            return _reject(
                "CLOCK_SKEW",
                f"Clock synchronization issue. Time difference: {skew:.1f}s "
                f"(max {TIMESTAMP_TOLERANCE_SECONDS:g}s)",
            )

        distance_m = haversine_m(session["anchor_lat"], session["anchor_lon"], lat, lon)
        if distance_m > GPS_TOLERANCE_METERS:
            return _reject(
                "TOO_FAR",
                f"Too far from the session location ({distance_m:.0f}m away, "
                f"max {GPS_TOLERANCE_METERS:g}m)",
                distance_m=distance_m,
            )

        record = {
            "session_id": session_id,
            "subject_id": claim["subject_id"],
            "given_name": claim["given_name"],
            "family_name": claim["family_name"],
            "client_lat": float(lat),
            "client_lon": float(lon),
            "client_ts": to_iso(client_dt),
            "verified_at": to_iso(received_at),
            "distance_m": distance_m,
            "device_id": device_id,
            "issuance_nonce": claim.get("issuance_nonce"),
            "claim_nonce": claim["claim_nonce"],
            "client_version": claim.get("client_version"),
            "source": "scan",
            "override_reason": None,
        }
        try:
            commit_accepted(record, conn=conn)
        except DeviceAlreadyRecorded:
            return _reject("DEVICE_ALREADY_RECORDED", MSG_DEVICE_RECORDED)
        except SessionNotActive:
            return _reject("SESSION_INACTIVE", MSG_SESSION_INACTIVE)
        return _accept(distance_m)
    finally:
        conn.close()


def _log_rejection(claim: dict[str, Any], verdict: ClaimVerdict, received_at: datetime) -> None:
    record = {name: _storable(claim.get(name)) for name in claim}
    record.update(
        {
            "received_at": to_iso(received_at),
            "distance_m": verdict["distance_m"],
            "reason_code": verdict["reason_code"],
            "reason": verdict["message"],
        }
    )
    try:
        insert_rejected_record(record)
    except Exception:
        logger.exception(
            "Failed to write rejection log (session=%s, reason=%s)",
            claim.get("session_id"),
            verdict["reason_code"],
        )


def submit_claim(raw: dict[str, Any], *, now: datetime | None = None) -> ClaimVerdict:
    received_at = now or utc_now()
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)
    claim = normalize_claim(raw if isinstance(raw, dict) else {})

    verdict = _evaluate(claim, received_at)
    if verdict["valid"]:
        logger.info(
            "Claim accepted (session=%s, device=%s, distance=%.1fm)",
            claim["session_id"],
            claim["device_id"],
            verdict["distance_m"],
        )
        return verdict

    logger.info(
        "Claim rejected (session=%s, device=%s, reason=%s)",
        claim.get("session_id"),
        claim.get("device_id"),
        verdict["reason_code"],
    )
    _log_rejection(claim, verdict, received_at)
    return verdict
