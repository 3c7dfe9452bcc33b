from datetime import timedelta

import pytest

import database.db as db
from backend.services import adjustments, lifecycle, pipeline
from backend.services.errors import (
    ActiveSessionExists,
    DeviceAlreadyRecorded,
    InvalidCoordinates,
    SessionAccessDenied,
    SessionNotActive,
)
from backend.tests.conftest import make_claim


def _accept(session_id, now, **overrides):
    token = lifecycle.issue_token(session_id, now=now)["payload"]["token"]
    verdict = pipeline.submit_claim(make_claim(session_id, token, now, **overrides), now=now)
    assert verdict["valid"] is True
    return token


def test_start_session_records_anchor(db_path, now):
    session = lifecycle.start_session("owner-1", 6.5244, 3.3792, now=now)

    assert session["is_active"] is True
    assert session["ended_at"] is None
    assert session["anchor_lat"] == 6.5244
    assert session["started_at"] == db.to_iso(now)
    assert db.get_session(session["session_id"]) == session


@pytest.mark.parametrize("lat, lon", [(95, 0), (0, -190), (None, 0), ("6.5", 3.3), (10**400, 0.0)])
def test_start_session_rejects_bad_anchor(db_path, lat, lon):
    with pytest.raises(InvalidCoordinates):
        lifecycle.start_session("owner-1", lat, lon)


def test_one_active_session_per_owner(db_path, now):
    lifecycle.start_session("owner-1", 0.0, 0.0, now=now)

    with pytest.raises(ActiveSessionExists):
        lifecycle.start_session("owner-1", 1.0, 1.0, now=now)

    # other owners are unaffected
    lifecycle.start_session("owner-2", 0.0, 0.0, now=now)


def test_concurrent_sessions_when_allowed(db_path, now, monkeypatch):
    monkeypatch.setattr(lifecycle, "ALLOW_CONCURRENT_SESSIONS", True)
    lifecycle.start_session("owner-1", 0.0, 0.0, now=now)
    lifecycle.start_session("owner-1", 0.0, 0.0, now=now)
    assert db.count_active_sessions("owner-1") == 2


def test_new_session_allowed_after_end(db_path, now):
    first = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)
    lifecycle.end_session("owner-1", first["session_id"], now=now)
    lifecycle.start_session("owner-1", 0.0, 0.0, now=now)


def test_issue_token_payload(db_path, now):
    session = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)
    issued = lifecycle.issue_token(session["session_id"], now=now)

    payload = issued["payload"]
    assert payload["session_id"] == session["session_id"]
    assert payload["timestamp"] == int(now.timestamp() * 1000)
    assert payload["token"].startswith(f"{payload['timestamp']}:")
    assert len(payload["issuance_nonce"]) == 64
    assert issued["validity_seconds"] == 10
    assert issued["rotation_interval_seconds"] == 5
    assert issued["expires_at"] == (now + timedelta(seconds=10)).isoformat()


def test_issue_token_removes_expired_tokens(db_path, now):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]
    for step in range(0, 30, 5):
        lifecycle.issue_token(sid, now=now + timedelta(seconds=step))

    # tokens issued at 15s, 20s and 25s are still live at 25s
    assert db.count_tokens(sid) == 3


def test_issue_token_for_ended_session(db_path, now):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]
    lifecycle.end_session("owner-1", sid, now=now)

    with pytest.raises(SessionNotActive):
        lifecycle.issue_token(sid, now=now)
    with pytest.raises(SessionNotActive):
        lifecycle.issue_token("no-such-session", now=now)


def test_end_session_archives_and_revokes(db_path, now):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]
    for _ in range(3):
        token = _accept(sid, now)
    adjustments.add_manual_record(
        "owner-1", sid, subject_id="S-9", given_name="Grace", family_name="Hopper", now=now
    )

    ended_at = now + timedelta(minutes=1)
    result = lifecycle.end_session("owner-1", sid, now=ended_at)
    assert result == {"session_id": sid, "archived_count": 4}

    session = db.get_session(sid)
    assert session["is_active"] is False
    assert session["ended_at"] == db.to_iso(ended_at)

    archived = db.get_archived_records(sid)
    accepted_ids = {r["id"] for r in db.get_accepted_records(sid)}
    assert len(archived) == 4
    assert {r["accepted_record_id"] for r in archived} == accepted_ids
    assert all(r["archived_at"] == db.to_iso(ended_at) for r in archived)
    assert db.count_tokens(sid) == 0

    # a token that was still inside its window no longer gets anyone in
    late = now + timedelta(seconds=2)
    verdict = pipeline.submit_claim(make_claim(sid, token, late), now=late)
    assert verdict["reason_code"] == "SESSION_INACTIVE"


def test_end_session_twice(db_path, now):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]
    lifecycle.end_session("owner-1", sid, now=now)

    with pytest.raises(SessionNotActive):
        lifecycle.end_session("owner-1", sid, now=now)


def test_end_session_requires_owner(db_path, now):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]

    with pytest.raises(SessionAccessDenied):
        lifecycle.end_session("owner-2", sid, now=now)
    with pytest.raises(SessionAccessDenied):
        lifecycle.end_session("owner-1", "no-such-session", now=now)
    assert db.get_session(sid)["is_active"] is True


def test_end_session_survives_archive_failure(db_path, now):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]
    _accept(sid, now)

    conn = db.connect_db()
    conn.execute("DROP TABLE archived_records")
    conn.commit()
    conn.close()

    result = lifecycle.end_session("owner-1", sid, now=now)

    assert result["archived_count"] == 0
    assert db.get_session(sid)["is_active"] is False
    assert db.count_tokens(sid) == 0
    assert len(db.get_accepted_records(sid)) == 1


def test_list_sessions_with_counts(db_path, now):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]
    _accept(sid, now)
    pipeline.submit_claim(make_claim(sid, "garbage", now), now=now)
    lifecycle.start_session("owner-2", 0.0, 0.0, now=now)

    sessions = lifecycle.list_sessions("owner-1")
    assert len(sessions) == 1
    assert sessions[0]["session_id"] == sid
    assert sessions[0]["valid_scans_count"] == 1
    assert sessions[0]["invalid_scans_count"] == 1
    assert sessions[0]["archived_scans_count"] == 0


def test_manual_record_bypasses_checks(db_path, now):
    session = lifecycle.start_session("owner-1", 6.5, 3.3, now=now)
    sid = session["session_id"]

    result = adjustments.add_manual_record(
        "owner-1",
        sid,
        subject_id="S-1",
        given_name="Ada",
        family_name="Lovelace",
        reason="Phone battery died",
        now=now,
    )
    assert result["device_id"].startswith("manual-override-")

    (record,) = db.get_accepted_records(sid)
    assert record["source"] == "manual"
    assert record["override_reason"] == "Phone battery died"
    assert record["distance_m"] == 0.0
    assert (record["client_lat"], record["client_lon"]) == (6.5, 3.3)
    assert record["client_version"] == "manual-override"


def test_manual_record_device_collision(db_path, now, monkeypatch):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]
    monkeypatch.setattr(adjustments, "_manual_device_id", lambda: "manual-override-fixed")

    fields = {"subject_id": "S-1", "given_name": "Ada", "family_name": "Lovelace"}
    adjustments.add_manual_record("owner-1", sid, now=now, **fields)
    with pytest.raises(DeviceAlreadyRecorded):
        adjustments.add_manual_record("owner-1", sid, now=now, **fields)
    assert len(db.get_accepted_records(sid)) == 1


def test_manual_record_access_and_state(db_path, now):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]
    fields = {"subject_id": "S-1", "given_name": "Ada", "family_name": "Lovelace"}

    with pytest.raises(SessionAccessDenied):
        adjustments.add_manual_record("owner-2", sid, **fields)

    lifecycle.end_session("owner-1", sid, now=now)
    with pytest.raises(SessionNotActive):
        adjustments.add_manual_record("owner-1", sid, **fields)


def test_manual_record_when_session_closes_meanwhile(db_path, now, monkeypatch):
    sid = lifecycle.start_session("owner-1", 0.0, 0.0, now=now)["session_id"]

    def end_then_id():
        lifecycle.end_session("owner-1", sid, now=now)
        return "manual-override-late"

    monkeypatch.setattr(adjustments, "_manual_device_id", end_then_id)

    with pytest.raises(SessionNotActive):
        adjustments.add_manual_record(
            "owner-1", sid, subject_id="S-1", given_name="Ada", family_name="Lovelace", now=now
        )
    assert db.get_accepted_records(sid) == []
    assert db.get_archived_records(sid) == []
