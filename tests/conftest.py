from datetime import datetime, timedelta, timezone

import pytest

from queuewatch.db import connect_db, init_db
from queuewatch.utils import to_iso

NOW = datetime(2025, 11, 6, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_file(tmp_path, monkeypatch):
    path = str(tmp_path / "queue.db")
    monkeypatch.setenv("QUEUEWATCH_DB", path)
    init_db(path)
    return path


@pytest.fixture
def conn(db_file):
    c = connect_db(db_file)
    yield c
    c.close()


@pytest.fixture
def clock():
    return lambda: NOW


def insert_job(conn, job_id, status="pending", *, queue="default", attempts=0, max_attempts=3,
               created_at=None, started_at=None, finished_at=None, last_error=None,
               command="echo hi", now=NOW):
    created_at = created_at or now - timedelta(minutes=5)
    fmt = lambda dt: to_iso(dt) if dt is not None else None
    if status == "failed" and last_error is None:
        last_error = "boom"
    with conn:
        conn.execute(
            """INSERT INTO jobs (id, queue, command, status, attempts, max_attempts, priority,
                                 created_at, updated_at, next_run_at, started_at, finished_at, last_error)
               VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)""",
            (job_id, queue, command, status, attempts, max_attempts, fmt(created_at), fmt(created_at),
             fmt(created_at), fmt(started_at), fmt(finished_at), last_error),
        )


@pytest.fixture
def make_job(conn):
    def _make(job_id, status="pending", **kwargs):
        insert_job(conn, job_id, status, **kwargs)
    return _make


@pytest.fixture
def now():
    return NOW
