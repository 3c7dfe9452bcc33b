import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.security import issue_session_token

ANCHOR = (0.0, 0.0)


@pytest.fixture()
def db_path(tmp_path, monkeypatch):
    test_db = tmp_path / "rollcall_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def client(db_path):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def now():
    return datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def owner_headers(owner_id: str) -> dict[str, str]:
    token, _ = issue_session_token(owner_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_headers():
    return owner_headers("owner-1")


def make_claim(session_id: str, token: str, client_ts: datetime, /, **overrides) -> dict:
    claim = {
        "session_id": session_id,
        "token": token,
        "issuance_nonce": "a" * 64,
        "subject_id": "2023/0042",
        "given_name": "Ada",
        "family_name": "Lovelace",
        "client_lat": ANCHOR[0],
        "client_lon": ANCHOR[1],
        "client_ts": client_ts.isoformat(),
        "device_id": f"device-{uuid.uuid4()}",
        "claim_nonce": str(uuid.uuid4()),
        "client_version": "1.4.0",
    }
    claim.update(overrides)
    return claim
