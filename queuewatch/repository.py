import functools
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple

from .config import RESTART_KEY, TOTAL_QUEUE, validate_config_value
from .errors import StoreUnavailable
from .models import Job, DEFAULT_QUEUE, PENDING, PROCESSING, COMPLETED, FAILED, RETRYING
from .utils import parse_iso, to_iso, utcnow


def _store_call(fn):
    """Surface driver errors as StoreUnavailable so callers see one error type."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"{fn.__name__}: {e}") from e

    return wrapper


@contextmanager
def read_snapshot(conn) -> Iterator[None]:
    """Run several SELECTs against one consistent view of the store."""
    try:
        owned = not conn.in_transaction
        if owned:
            conn.execute("BEGIN")
    except sqlite3.Error as e:
        raise StoreUnavailable(f"read_snapshot: {e}") from e
    try:
        yield
    finally:
        if owned:
            conn.rollback()


# ---------- Config ----------
@_store_call
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


@_store_call
def set_config(conn, key: str, value: str):
    validate_config_value(key, str(value))
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


@_store_call
def request_worker_restart(conn, now: Optional[datetime] = None) -> str:
    ts = to_iso(now or utcnow())
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (RESTART_KEY, ts),
        )
    return ts


@_store_call
def restart_requested_at(conn) -> Optional[datetime]:
    row = conn.execute("SELECT value FROM config WHERE key=?", (RESTART_KEY,)).fetchone()
    return parse_iso(row["value"]) if row else None


# ---------- Jobs: enqueue / claim / complete / fail ----------
@_store_call
def enqueue_job(
    conn,
    *,
    job_id: str,
    command: str,
    queue: str = DEFAULT_QUEUE,
    max_attempts: Optional[int] = None,
    priority: int = 0,
    run_at: Optional[str] = None,       # ISO; naive values are taken as UTC
    delay_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
):
    if not job_id or not job_id.strip():
        raise ValueError("Job id cannot be empty.")
    if not command or not command.strip():
        raise ValueError("Command cannot be empty.")
    if not queue or not queue.strip():
        raise ValueError("Queue cannot be empty.")
    if queue.strip() == TOTAL_QUEUE:
        raise ValueError(f"'{TOTAL_QUEUE}' is reserved and cannot be a queue name.")
    if delay_seconds is not None and delay_seconds <= 0:
        raise ValueError("delay must be > 0 seconds")

    now = now or utcnow()
    if max_attempts is None:
        try:
            max_attempts = int(get_config(conn).get("max_retries_default", "3"))
        except ValueError:
            raise ValueError("max_retries_default must be an integer.")
    if max_attempts < 0:
        raise ValueError("max_attempts must be >= 0.")

    ts = to_iso(now)
    if delay_seconds is not None:
        next_at = to_iso(now + timedelta(seconds=delay_seconds))
    elif run_at:
        try:
            next_at = to_iso(parse_iso(run_at))
        except ValueError as e:
            raise ValueError(f"Invalid --run-at format: {run_at} ({e})")
    else:
        next_at = ts

    exists = conn.execute("SELECT 1 FROM jobs WHERE id=?", (job_id,)).fetchone()
    if exists:
        raise ValueError(f"Job '{job_id}' already exists.")

    with conn:
        conn.execute(
            """INSERT INTO jobs
               (id, queue, command, status, attempts, max_attempts, priority,
                created_at, updated_at, next_run_at)
               VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?)""",
            (job_id, queue, command, PENDING, max_attempts, int(priority), ts, ts, next_at),
        )


@_store_call
def claim_one(conn, worker_name: str, queue: Optional[str] = None,
              now: Optional[datetime] = None) -> Optional[Job]:
    now_s = to_iso(now or utcnow())
    sql = """SELECT id FROM jobs
             WHERE status=? AND (next_run_at IS NULL OR next_run_at <= ?)"""
    params: list = [PENDING, now_s]
    if queue:
        sql += " AND queue=?"
        params.append(queue)
    sql += " ORDER BY priority ASC, created_at ASC LIMIT 1"
    with conn:
        row = conn.execute(sql, params).fetchone()
        if not row:
            return None
        job_id = row["id"]
        updated = conn.execute(
            """UPDATE jobs SET status=?, picked_by=?, started_at=?, finished_at=NULL, updated_at=?
               WHERE id=? AND status=?""",
            (PROCESSING, worker_name, now_s, now_s, job_id, PENDING),
        )
        if updated.rowcount != 1:
            return None
        return Job.from_row(conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone())


@_store_call
def complete(conn, job_id: str, now: Optional[datetime] = None) -> bool:
    now_s = to_iso(now or utcnow())
    with conn:
        res = conn.execute(
            """UPDATE jobs SET status=?, finished_at=?, updated_at=?, last_error=NULL, picked_by=NULL
               WHERE id=? AND status=?""",
            (COMPLETED, now_s, now_s, job_id, PROCESSING),
        )
    return res.rowcount == 1


@_store_call
def fail(conn, job_id: str, error: str, now: Optional[datetime] = None) -> bool:
    now_s = to_iso(now or utcnow())
    with conn:
        res = conn.execute(
            """UPDATE jobs SET status=?, finished_at=?, updated_at=?, last_error=?, picked_by=NULL
               WHERE id=? AND status=?""",
            (FAILED, now_s, now_s, (error or "unknown error")[:500], job_id, PROCESSING),
        )
    return res.rowcount == 1


# ---------- Retry transitions ----------
@_store_call
def retry_job(conn, job_id: str, delay_seconds: float = 0, now: Optional[datetime] = None) -> bool:
    """failed -> retrying -> pending in one transaction, consuming one attempt.

    The failed -> retrying step is a compare-and-swap; only the caller that
    observes rowcount == 1 owns the retry. Both steps commit or roll back
    together, so no other connection ever sees a committed `retrying` row.
    """
    now = now or utcnow()
    now_s = to_iso(now)
    with conn:
        res = conn.execute(
            """UPDATE jobs SET status=?, attempts=attempts + 1, last_error=NULL, updated_at=?
               WHERE id=? AND status=? AND attempts < max_attempts""",
            (RETRYING, now_s, job_id, FAILED),
        )
        if res.rowcount != 1:
            return False
        conn.execute(
            """UPDATE jobs SET status=?, next_run_at=?, started_at=NULL, finished_at=NULL,
                   picked_by=NULL, updated_at=?
               WHERE id=? AND status=?""",
            (PENDING, to_iso(now + timedelta(seconds=delay_seconds)), now_s, job_id, RETRYING),
        )
    return True


@_store_call
def release_stranded(conn, now: Optional[datetime] = None) -> int:
    """Hand committed `retrying` rows back to the pending pool.

    retry_job never commits one, so such a row was left by an interrupted
    writer outside it. Its attempt is already counted.
    """
    now_s = to_iso(now or utcnow())
    with conn:
        res = conn.execute(
            """UPDATE jobs SET status=?, next_run_at=?, started_at=NULL, finished_at=NULL,
                   picked_by=NULL, updated_at=?
               WHERE status=?""",
            (PENDING, now_s, now_s, RETRYING),
        )
    return res.rowcount


@_store_call
def purge_terminal(conn, before: datetime) -> int:
    """Delete completed and dead-lettered jobs that finished before `before`."""
    with conn:
        res = conn.execute(
            """DELETE FROM jobs
               WHERE finished_at < ?
                 AND (status=? OR (status=? AND attempts >= max_attempts))""",
            (to_iso(before), COMPLETED, FAILED),
        )
    return res.rowcount


# ---------- Queries ----------
@_store_call
def get_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return Job.from_row(row) if row else None


@_store_call
def list_jobs(conn, status: Optional[str] = None, queue: Optional[str] = None) -> List[Job]:
    sql, params = "SELECT * FROM jobs WHERE 1=1", []
    if status:
        sql += " AND status=?"
        params.append(status)
    if queue:
        sql += " AND queue=?"
        params.append(queue)
    sql += " ORDER BY priority ASC, created_at ASC"
    return [Job.from_row(r) for r in conn.execute(sql, params).fetchall()]


@_store_call
def retryable_failed(conn, since: Optional[datetime] = None) -> List[Job]:
    sql = "SELECT * FROM jobs WHERE status=? AND attempts < max_attempts"
    params: list = [FAILED]
    if since is not None:
        sql += " AND COALESCE(finished_at, created_at) > ?"
        params.append(to_iso(since))
    sql += " ORDER BY COALESCE(finished_at, created_at) ASC"
    return [Job.from_row(r) for r in conn.execute(sql, params).fetchall()]


@_store_call
def queue_counts(conn) -> Dict[str, Dict[str, int]]:
    rows = conn.execute(
        """SELECT queue,
                  SUM(CASE WHEN status=? THEN 1 ELSE 0 END) AS pending,
                  SUM(CASE WHEN status=? THEN 1 ELSE 0 END) AS processing
           FROM jobs WHERE status IN (?, ?) GROUP BY queue""",
        (PENDING, PROCESSING, PENDING, PROCESSING),
    ).fetchall()
    return {r["queue"]: {"pending": r["pending"], "processing": r["processing"]} for r in rows}


@_store_call
def status_counts(conn, stuck_before: datetime) -> Dict[str, int]:
    row = conn.execute(
        """SELECT
             COALESCE(SUM(CASE WHEN status=? THEN 1 ELSE 0 END), 0) AS pending,
             COALESCE(SUM(CASE WHEN status=? THEN 1 ELSE 0 END), 0) AS processing,
             COALESCE(SUM(CASE WHEN status=? THEN 1 ELSE 0 END), 0) AS completed,
             COALESCE(SUM(CASE WHEN status=? THEN 1 ELSE 0 END), 0) AS failed,
             COALESCE(SUM(CASE WHEN status=? THEN 1 ELSE 0 END), 0) AS retrying,
             COALESCE(SUM(CASE WHEN status=? AND started_at < ? THEN 1 ELSE 0 END), 0) AS stuck
           FROM jobs""",
        (PENDING, PROCESSING, COMPLETED, FAILED, RETRYING, PROCESSING, to_iso(stuck_before)),
    ).fetchone()
    return {k: row[k] for k in row.keys()}


@_store_call
def failed_counts(conn, since_24h: datetime, since_1h: datetime) -> Dict[str, int]:
    row = conn.execute(
        """SELECT
             COUNT(1) AS total,
             COALESCE(SUM(CASE WHEN COALESCE(finished_at, created_at) > ? THEN 1 ELSE 0 END), 0) AS recent_24h,
             COALESCE(SUM(CASE WHEN COALESCE(finished_at, created_at) > ? THEN 1 ELSE 0 END), 0) AS recent_1h,
             COALESCE(SUM(CASE WHEN attempts >= max_attempts THEN 1 ELSE 0 END), 0) AS dead_lettered
           FROM jobs WHERE status=?""",
        (to_iso(since_24h), to_iso(since_1h), FAILED),
    ).fetchone()
    return {k: row[k] for k in row.keys()}


@_store_call
def completed_spans(conn, since: Optional[datetime] = None) -> List[Tuple[str, str]]:
    """(started_at, finished_at) of completed jobs, optionally finished after `since`."""
    sql = "SELECT started_at, finished_at FROM jobs WHERE status=? AND started_at IS NOT NULL"
    params: list = [COMPLETED]
    if since is not None:
        sql += " AND finished_at > ?"
        params.append(to_iso(since))
    return [(r["started_at"], r["finished_at"]) for r in conn.execute(sql, params).fetchall()]
