from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_owner
from backend.services.errors import (
    ActiveSessionExists,
    InvalidCoordinates,
    SessionAccessDenied,
    SessionNotActive,
)
from backend.services.lifecycle import (
    end_session,
    get_owned_session,
    issue_token,
    list_sessions,
    start_session,
)

router = APIRouter()

UNAUTHORIZED = "Unauthorized."


class SessionStart(BaseModel):
    # Loosely typed so bad coordinates get a 400 from the lifecycle check.
    anchor_lat: Any = None
    anchor_lon: Any = None


class SessionEnd(BaseModel):
    session_id: str | None = None


@router.post("/sessions/start")
def start(payload: SessionStart, owner: dict = Depends(require_owner)):
    try:
        session = start_session(owner["sub"], payload.anchor_lat, payload.anchor_lon)
    except InvalidCoordinates:
        raise HTTPException(status_code=400, detail="Invalid GPS coordinates.")
    except ActiveSessionExists as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    return {
        "session_id": session["session_id"],
        "anchor_lat": session["anchor_lat"],
        "anchor_lon": session["anchor_lon"],
        "started_at": session["started_at"],
    }


@router.post("/sessions/end")
def end(payload: SessionEnd, owner: dict = Depends(require_owner)):
    session_id = (payload.session_id or "").strip()
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID is required.")

    try:
        return end_session(owner["sub"], session_id)
    except SessionAccessDenied:
        raise HTTPException(status_code=403, detail=UNAUTHORIZED)
    except SessionNotActive:
        raise HTTPException(status_code=409, detail="Session already ended.")


@router.get("/sessions")
def sessions(owner: dict = Depends(require_owner)):
    return {"sessions": list_sessions(owner["sub"])}


@router.get("/sessions/{session_id}/qr-token")
def qr_token(session_id: str, owner: dict = Depends(require_owner)):
    try:
        get_owned_session(owner["sub"], session_id)
        return issue_token(session_id)
    except SessionAccessDenied:
        raise HTTPException(status_code=403, detail=UNAUTHORIZED)
    except SessionNotActive:
        raise HTTPException(status_code=404, detail="Session not found or inactive.")
