from fastapi import APIRouter, Depends, HTTPException, Response

from backend.security import require_owner
from backend.services.errors import SessionAccessDenied
from backend.services.lifecycle import get_owned_session
from backend.services.reporting import archived_scans, export_csv, session_scans
from database.db import SessionRow, utc_now

router = APIRouter()


def _owned(owner: dict, session_id: str) -> SessionRow:
    try:
        return get_owned_session(owner["sub"], session_id)
    except SessionAccessDenied:
        raise HTTPException(status_code=403, detail="Unauthorized.")


@router.get("/sessions/{session_id}/scans")
def scans(session_id: str, owner: dict = Depends(require_owner)):
    return session_scans(_owned(owner, session_id))


@router.get("/sessions/{session_id}/archived-scans")
def archived(session_id: str, owner: dict = Depends(require_owner)):
    return archived_scans(_owned(owner, session_id))


@router.get("/sessions/{session_id}/export")
def export(session_id: str, owner: dict = Depends(require_owner)):
    session = _owned(owner, session_id)
    stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
    return Response(
        content=export_csv(session),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="attendance_{session_id}_{stamp}.csv"'},
    )
