import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "database" / "rollcall.db"))
DB_BUSY_TIMEOUT_SECONDS = float(os.getenv("ROLLCALL_DB_BUSY_TIMEOUT_SECONDS", "30"))
SIGNING_KEY = os.getenv("ROLLCALL_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
QR_SIGNING_KEY = os.getenv("ROLLCALL_QR_SIGNING_KEY", "").strip() or SIGNING_KEY
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS", "86400"))
LOG_LEVEL = os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float, *, minimum: float = 0.0) -> float:
    if not value:
        return fallback
    try:
        return max(minimum, float(value))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ROLLCALL_CORS_ALLOW_CREDENTIALS"), True)

# QR rotation: the display refreshes every QR_ROTATION_SECONDS, each token
# stays valid for QR_VALIDITY_SECONDS (never shorter than one rotation).
QR_ROTATION_SECONDS = _parse_float(os.getenv("ROLLCALL_QR_ROTATION_SECONDS"), 5.0, minimum=1.0)
QR_VALIDITY_SECONDS = max(
    QR_ROTATION_SECONDS,
    _parse_float(os.getenv("ROLLCALL_QR_VALIDITY_SECONDS"), 10.0, minimum=1.0),
)
QR_FUTURE_SKEW_SECONDS = _parse_float(os.getenv("ROLLCALL_QR_FUTURE_SKEW_SECONDS"), 5.0)

# Claim gates
GPS_TOLERANCE_METERS = _parse_float(os.getenv("ROLLCALL_GPS_TOLERANCE_METERS"), 50.0)
TIMESTAMP_TOLERANCE_SECONDS = _parse_float(os.getenv("ROLLCALL_TIMESTAMP_TOLERANCE_SECONDS"), 10.0)

ALLOW_CONCURRENT_SESSIONS = _parse_bool(os.getenv("ROLLCALL_ALLOW_CONCURRENT_SESSIONS"), False)
