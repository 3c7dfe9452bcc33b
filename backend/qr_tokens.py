"""
Rotating QR token codec.

A token is rendered as ``"<timestamp_ms>:<mac_hex>"``. The MAC covers the
session id, the timestamp and a per-issuance random nonce that is never
transmitted, so a token cannot be forged from a known timestamp.

``check_format`` is only a cheap pre-filter; the persisted token registry
(``database.db.find_live_token``) stays the authoritative check.
"""

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from backend.config import QR_FUTURE_SKEW_SECONDS, QR_SIGNING_KEY, QR_VALIDITY_SECONDS

MAC_HEX_LENGTH = hashlib.sha256().digest_size * 2
_HEX_DIGITS = frozenset("0123456789abcdef")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _mac(session_id: str, timestamp_ms: int, nonce: str) -> str:
    data = f"{session_id}:{timestamp_ms}:{nonce}"
    return hmac.new(
        QR_SIGNING_KEY.encode("utf-8"),
        data.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def _to_ms(moment: datetime) -> int:
    # integer arithmetic, no float rounding near the window edges
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def new_issuance_nonce() -> str:
    return secrets.token_hex(32)


def issue(session_id: str, now: datetime) -> tuple[str, datetime]:
    """Return ``(token_value, expires_at)`` for ``session_id`` issued at ``now``."""
    timestamp_ms = _to_ms(now)
    token = f"{timestamp_ms}:{_mac(session_id, timestamp_ms, secrets.token_hex(16))}"
    return token, now + timedelta(seconds=QR_VALIDITY_SECONDS)


def token_timestamp_ms(token_value: str) -> int | None:
    parts = token_value.split(":")
    if len(parts) != 2:
        return None
    stamp, mac = parts
    if not stamp.isdigit():
        return None
    if len(mac) != MAC_HEX_LENGTH or not set(mac) <= _HEX_DIGITS:
        return None
    return int(stamp)


def check_format(token_value, now: datetime, max_age: float = QR_VALIDITY_SECONDS) -> bool:
    if not isinstance(token_value, str):
        return False
    timestamp_ms = token_timestamp_ms(token_value)
    if timestamp_ms is None:
        return False

    age_seconds = (_to_ms(now) - timestamp_ms) / 1000
    if age_seconds < -QR_FUTURE_SKEW_SECONDS:
        return False
    if age_seconds > max_age:
        return False
    return True
