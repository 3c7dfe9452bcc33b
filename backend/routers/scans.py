from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from backend.security import require_owner
from backend.services.adjustments import add_manual_record
from backend.services.errors import DeviceAlreadyRecorded, SessionAccessDenied, SessionNotActive
from backend.services.pipeline import ClaimVerdict, submit_claim

router = APIRouter()


class ManualOverride(BaseModel):
    session_id: str | None = None
    subject_id: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    reason: str | None = None


def _verdict_payload(verdict: ClaimVerdict) -> dict:
    if verdict["valid"]:
        payload = {"valid": True, "message": verdict["message"]}
    else:
        payload = {
            "valid": False,
            "reason": verdict["message"],
            "reason_code": verdict["reason_code"],
        }
    if verdict["distance_m"] is not None:
        payload["distance_m"] = round(verdict["distance_m"])
    return payload


@router.post("/scans/submit")
async def submit_scan(request: Request):
    # Validation outcomes are always 200; even an unparseable body is a
    # "missing fields" rejection, not a transport error.
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    return _verdict_payload(submit_claim(body))


@router.post("/scans/manual-override")
def manual_override(payload: ManualOverride, owner: dict = Depends(require_owner)):
    session_id = (payload.session_id or "").strip()
    subject_id = (payload.subject_id or "").strip()
    given_name = (payload.given_name or "").strip()
    family_name = (payload.family_name or "").strip()
    reason = (payload.reason or "").strip() or None

    if not session_id or not subject_id or not given_name or not family_name:
        raise HTTPException(status_code=400, detail="Missing required fields.")

    try:
        result = add_manual_record(
            owner["sub"],
            session_id,
            subject_id=subject_id,
            given_name=given_name,
            family_name=family_name,
            reason=reason,
        )
    except SessionAccessDenied:
        raise HTTPException(status_code=403, detail="Unauthorized.")
    except SessionNotActive:
        raise HTTPException(status_code=409, detail="Session already ended.")
    except DeviceAlreadyRecorded:
        raise HTTPException(
            status_code=409,
            detail="A valid scan already exists for this device in this session.",
        )

    return {
        "message": "Manual override added successfully",
        "subject_id": result["subject_id"],
        "given_name": result["given_name"],
        "family_name": result["family_name"],
    }
