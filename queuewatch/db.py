import os
import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG
from .errors import StoreUnavailable

DB_ENV = "QUEUEWATCH_DB"
DEFAULT_DB_FILE = "queue.db"

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    queue TEXT NOT NULL DEFAULT 'default',
    command TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    priority INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    next_run_at TEXT,
    started_at TEXT,
    finished_at TEXT,
    last_error TEXT,
    picked_by TEXT,
    CHECK (attempts <= max_attempts)
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_next ON jobs(status, next_run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_queue_status ON jobs(queue, status);
CREATE INDEX IF NOT EXISTS idx_jobs_status_finished ON jobs(status, finished_at);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def db_path(path: Optional[str] = None) -> str:
    return path or os.environ.get(DB_ENV, DEFAULT_DB_FILE)


def connect_db(path: Optional[str] = None) -> sqlite3.Connection:
    try:
        conn = sqlite3.connect(db_path(path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
    except sqlite3.Error as e:
        raise StoreUnavailable(f"cannot open job store {db_path(path)}: {e}") from e
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
