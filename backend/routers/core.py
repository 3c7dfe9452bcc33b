from fastapi import APIRouter

from backend.config import (
    ALLOW_CONCURRENT_SESSIONS,
    GPS_TOLERANCE_METERS,
    QR_FUTURE_SKEW_SECONDS,
    QR_ROTATION_SECONDS,
    QR_VALIDITY_SECONDS,
    TIMESTAMP_TOLERANCE_SECONDS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/attendance")
def attendance_config():
    return {
        "gps_tolerance_meters": GPS_TOLERANCE_METERS,
        "timestamp_tolerance_seconds": TIMESTAMP_TOLERANCE_SECONDS,
        "qr_rotation_seconds": QR_ROTATION_SECONDS,
        "qr_validity_seconds": QR_VALIDITY_SECONDS,
        "qr_future_skew_seconds": QR_FUTURE_SKEW_SECONDS,
        "allow_concurrent_sessions": ALLOW_CONCURRENT_SESSIONS,
    }
