from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import decode_session_token, require_owner

router = APIRouter()


class TokenCheck(BaseModel):
    token: str | None = None


def _owner_view(claims: dict) -> dict:
    return {
        "owner_id": claims.get("sub"),
        "name": claims.get("name"),
        "expires_at": claims.get("exp"),
        "issued_at": claims.get("iat"),
    }


@router.get("/auth/me")
def auth_me(owner: dict = Depends(require_owner)):
    return _owner_view(owner)


@router.post("/auth/verify")
def verify_token(payload: TokenCheck):
    token = (payload.token or "").strip()
    if not token:
        raise HTTPException(status_code=400, detail="Token is required.")

    claims = decode_session_token(token)
    if not claims:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    return {"owner": _owner_view(claims)}
