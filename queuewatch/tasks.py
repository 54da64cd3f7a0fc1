"""Operations behind the scheduled tasks and the matching CLI commands."""
import functools
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from . import metrics, repository
from .db import connect_db
from .errors import UnhealthyQueue
from .health import QueueHealth
from .logs import report_logger
from .retry import RetryOrchestrator
from .scheduler import DailyAt, EVERY_FIVE_MINUTES, EVERY_MINUTE, HOURLY, Schedule, TaskSpec
from .utils import to_iso, utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_REMINDERS = "notification-reminders"
QUEUE_HEALTH_PROBE = "queue-health-probe"
QUEUE_HEALTH_REPORT = "queue-health-report"
RETRY_FAILED_JOBS = "retry-failed-jobs"
FLUSH_TERMINAL_JOBS = "flush-terminal-jobs"
RESTART_WORKERS = "restart-workers"

REPORT_TASKS = (QUEUE_HEALTH_REPORT, RETRY_FAILED_JOBS)

NOTIFICATIONS_QUEUE = "notifications"


# ---------- operations (take an open connection) ----------
def dispatch_reminders(conn, now: Optional[datetime] = None, dry_run: bool = False) -> Optional[str]:
    """Enqueue the reminder-processing job on the notifications queue."""
    now = now or utcnow()
    job_id = f"reminders-{now.strftime('%Y%m%dT%H%M%S')}"
    if dry_run:
        return job_id
    command = repository.get_config(conn).get("reminder_command", "echo process-reminders")
    repository.enqueue_job(conn, job_id=job_id, command=command, queue=NOTIFICATIONS_QUEUE, now=now)
    logger.info("Dispatched reminder job %s", job_id)
    return job_id


def flush_terminal_jobs(conn, hours: Optional[int] = None, now: Optional[datetime] = None) -> int:
    if hours is None:
        hours = int(repository.get_config(conn).get("retention_hours", "24"))
    if hours < 0:
        raise ValueError("hours must be >= 0")
    cutoff = (now or utcnow()) - timedelta(hours=hours)
    purged = repository.purge_terminal(conn, before=cutoff)
    logger.info("Flushed %d terminal job(s) finished before %s", purged, to_iso(cutoff))
    return purged


def probe_health(conn):
    snapshot = QueueHealth(conn).snapshot()
    metrics.observe_snapshot(snapshot)
    if not snapshot.healthy:
        raise UnhealthyQueue(snapshot.problems)
    return {"healthy": True}


def report_health(conn):
    snapshot = QueueHealth(conn).snapshot()
    metrics.observe_snapshot(snapshot)
    report_logger(QUEUE_HEALTH_REPORT).info(json.dumps(snapshot.to_dict(), sort_keys=True))
    return {"healthy": snapshot.healthy}


def retry_failed(conn):
    report = RetryOrchestrator(conn).run()
    report_logger(RETRY_FAILED_JOBS).info(
        "Retry run: attempted=%d succeeded=%d skipped=%d failed=%d",
        report.attempted, report.succeeded, report.skipped, report.failed,
    )
    return report.to_dict()


def restart_workers(conn):
    return {"restart_requested_at": repository.request_worker_restart(conn)}


def flush_action(conn):
    return {"purged": flush_terminal_jobs(conn)}


def reminders_action(conn):
    return {"job_id": dispatch_reminders(conn)}


# ---------- schedule ----------
def _with_conn(fn, db: Optional[str]):
    """Each run opens its own connection; sqlite connections stay on their thread."""

    @functools.wraps(fn)
    def run():
        conn = connect_db(db)
        try:
            return fn(conn)
        finally:
            conn.close()

    return run


def default_schedule(db: Optional[str] = None) -> Schedule:
    return Schedule([
        TaskSpec(NOTIFICATION_REMINDERS, EVERY_FIVE_MINUTES, _with_conn(reminders_action, db),
                 exclusive=True, deadline=240),
        TaskSpec(QUEUE_HEALTH_PROBE, EVERY_MINUTE, _with_conn(probe_health, db),
                 exclusive=True, deadline=30),
        TaskSpec(QUEUE_HEALTH_REPORT, EVERY_FIVE_MINUTES, _with_conn(report_health, db),
                 exclusive=False, deadline=120),
        TaskSpec(RETRY_FAILED_JOBS, HOURLY, _with_conn(retry_failed, db),
                 exclusive=True, deadline=1800),
        TaskSpec(FLUSH_TERMINAL_JOBS, DailyAt(2, 0), _with_conn(flush_action, db),
                 exclusive=True, deadline=1800),
        TaskSpec(RESTART_WORKERS, DailyAt(3, 0), _with_conn(restart_workers, db),
                 exclusive=False, deadline=60),
    ])
