import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG, db_path

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    task_type TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    queue TEXT NOT NULL DEFAULT 'default',
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    scheduled_at TEXT NOT NULL,
    reserved_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    last_error TEXT,
    schedule_name TEXT,
    schedule_key TEXT UNIQUE
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, queue, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_jobs_reserved ON jobs(status, reserved_at);
CREATE INDEX IF NOT EXISTS idx_jobs_schedule ON jobs(schedule_name, status);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None, timeout: float = 30.0):
    conn = sqlite3.connect(path or db_path(), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    try:
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()
