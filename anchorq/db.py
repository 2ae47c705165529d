import os
import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG, DEFAULT_DB_FILE

DB_FILE = os.environ.get("ANCHORQ_DB", DEFAULT_DB_FILE)

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS records (
    id TEXT PRIMARY KEY,
    issuer TEXT NOT NULL,
    title TEXT NOT NULL,
    metadata_ref TEXT NOT NULL,
    status TEXT NOT NULL,
    note TEXT,
    transaction_handle TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_status ON records(status);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None):
    conn = sqlite3.connect(path or DB_FILE, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    with conn:
        # seed defaults
        for k, v in DEFAULT_CONFIG.items():
            conn.execute(
                "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
            )
    conn.close()
