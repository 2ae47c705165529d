import sqlite3
from typing import Dict, List, Optional

from .config import ALLOWED_CONFIG_KEYS, Settings
from .db import connect_db
from .errors import NotFound
from .models import STATUSES, PENDING, IssuanceRecord
from .utils import now_iso, new_record_id


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    # reject values the engine could not use
    Settings.from_config({**get_config(conn), key: str(value)})
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


def load_settings(conn) -> Settings:
    return Settings.from_config(get_config(conn))


# ---------- Records: create / update ----------
def create_record(
    conn,
    *,
    issuer: str,
    title: str,
    metadata_ref: str,
    record_id: Optional[str] = None,
) -> IssuanceRecord:
    for name, value in (("issuer", issuer), ("title", title), ("metadata_ref", metadata_ref)):
        if not value or not value.strip():
            raise ValueError(f"{name} cannot be empty.")

    record_id = record_id or new_record_id()
    ts = now_iso()
    try:
        with conn:
            conn.execute(
                """INSERT INTO records
                   (id, issuer, title, metadata_ref, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (record_id, issuer, title, metadata_ref, PENDING, ts, ts),
            )
    except sqlite3.IntegrityError:
        raise ValueError(f"Record '{record_id}' already exists.")
    return get_record(conn, record_id)


def update_status(
    conn,
    record_id: str,
    status: str,
    note: str = "",
    handle: Optional[str] = None,
) -> IssuanceRecord:
    """Set status and note; the handle is only overwritten when a new one is given."""
    if status not in STATUSES:
        raise ValueError(f"Unknown status {status!r}")
    with conn:
        res = conn.execute(
            """UPDATE records
               SET status=?, note=?, updated_at=?,
                   transaction_handle=COALESCE(?, transaction_handle)
               WHERE id=?""",
            (status, note[:500], now_iso(), handle, record_id),
        )
    if res.rowcount != 1:
        raise NotFound(record_id)
    return get_record(conn, record_id)


# ---------- Queries ----------
def get_record(conn, record_id: str) -> IssuanceRecord:
    row = conn.execute("SELECT * FROM records WHERE id=?", (record_id,)).fetchone()
    if not row:
        raise NotFound(record_id)
    return IssuanceRecord.from_row(row)


def list_records(
    conn,
    status: Optional[str] = None,
    has_handle: Optional[bool] = None,
) -> List[IssuanceRecord]:
    clauses, params = [], []
    if status:
        clauses.append("status=?")
        params.append(status)
    if has_handle is True:
        clauses.append("transaction_handle IS NOT NULL")
    elif has_handle is False:
        clauses.append("transaction_handle IS NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM records {where} ORDER BY created_at ASC, rowid ASC", params
    ).fetchall()
    return [IssuanceRecord.from_row(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    out = {}
    for s in STATUSES:
        out[s] = conn.execute(
            "SELECT COUNT(1) AS c FROM records WHERE status=?",
            (s,),
        ).fetchone()["c"]
    return out


class RecordStore:
    """
    Record Store bound to one database file.

    Opens a short-lived connection per call, so the drain thread, the ticker
    and CLI callers never share a sqlite connection.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path

    def _run(self, fn, *args, **kwargs):
        conn = connect_db(self.path)
        try:
            return fn(conn, *args, **kwargs)
        finally:
            conn.close()

    def create(self, **kwargs) -> IssuanceRecord:
        return self._run(create_record, **kwargs)

    def get_by_id(self, record_id: str) -> IssuanceRecord:
        return self._run(get_record, record_id)

    def update_status(self, record_id, status, note="", handle=None) -> IssuanceRecord:
        return self._run(update_status, record_id, status, note, handle)

    def list(self, status=None, has_handle=None) -> List[IssuanceRecord]:
        return self._run(list_records, status=status, has_handle=has_handle)

    def counts(self) -> Dict[str, int]:
        return self._run(counts)

    def settings(self) -> Settings:
        return self._run(load_settings)
