import csv
import io
from typing import Any

from database.db import (
    SessionRow,
    get_accepted_records,
    get_archived_records,
    get_rejected_records,
)

EXPORT_HEADER = [
    "#",
    "Subject ID",
    "Given name",
    "Family name",
    "Verified at",
    "Client time",
    "Distance (m)",
    "Device ID",
    "App version",
]


def session_scans(session: SessionRow) -> dict[str, Any]:
    valid = get_accepted_records(session["session_id"], newest_first=True)
    invalid = get_rejected_records(session["session_id"])
    return {
        "session": session,
        "valid_scans": valid,
        "invalid_scans": invalid,
        "valid_count": len(valid),
        "invalid_count": len(invalid),
    }


def archived_scans(session: SessionRow) -> dict[str, Any]:
    return {
        "session": session,
        "archived_scans": get_archived_records(session["session_id"]),
    }


def _csv_bytes(rows, header) -> bytes:
    buf = io.StringIO(newline="")
    w = csv.writer(buf, lineterminator="\r\n", quoting=csv.QUOTE_MINIMAL)
    w.writerow(header)
    for row in rows:
        w.writerow(row)
    # BOM so spreadsheet apps pick UTF-8 for non-ASCII names
    return ("\ufeff" + buf.getvalue()).encode("utf-8")


def export_csv(session: SessionRow) -> bytes:
    records = get_accepted_records(session["session_id"])
    rows = [
        [
            idx,
            r["subject_id"],
            r["given_name"] or "",
            r["family_name"] or "",
            r["verified_at"],
            r["client_ts"],
            round(float(r["distance_m"])),
            r["device_id"],
            r["client_version"] or "N/A",
        ]
        for idx, r in enumerate(records, start=1)
    ]
    return _csv_bytes(rows, EXPORT_HEADER)
