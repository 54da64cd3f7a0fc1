"""
Queue health engine.

Every public method reads the job store at call time inside a single read
transaction, so the numbers of one call are mutually consistent. Nothing is
cached between calls. Store failures surface as StoreUnavailable; the engine
never retries and never returns a partial result.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from . import repository
from .config import TOTAL_QUEUE, HealthPolicy
from .models import span_seconds
from .utils import median, percentile, to_iso, utcnow

logger = logging.getLogger(__name__)

DAY = timedelta(hours=24)
HOUR = timedelta(hours=1)


@dataclass
class HealthSnapshot:
    timestamp: datetime
    queues: Dict[str, Dict[str, int]]
    job_stats: Dict[str, int]
    failed_jobs: Dict[str, int]
    performance: Dict[str, float]
    healthy: bool
    problems: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "timestamp": to_iso(self.timestamp),
            "queues": self.queues,
            "job_stats": self.job_stats,
            "failed_jobs": self.failed_jobs,
            "performance": self.performance,
            "healthy": self.healthy,
        }


def _durations(spans) -> List[float]:
    out = []
    for started, finished in spans:
        seconds = span_seconds(started, finished)
        if seconds is not None:
            out.append(seconds)
    return out


class QueueHealth:
    def __init__(self, conn, policy: Optional[HealthPolicy] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.conn = conn
        self.policy = policy or HealthPolicy.from_config(repository.get_config(conn))
        self.clock = clock

    # ---------- individual reports ----------
    def queue_status(self) -> Dict[str, Dict[str, int]]:
        with repository.read_snapshot(self.conn):
            counts = repository.queue_counts(self.conn)
        status = {q: {"pending": 0, "processing": 0} for q in self.policy.queues}
        for queue in sorted(counts):
            status[queue] = counts[queue]
        status[TOTAL_QUEUE] = {
            "pending": sum(v["pending"] for v in status.values()),
            "processing": sum(v["processing"] for v in status.values()),
        }
        return status

    def stuck_threshold(self) -> timedelta:
        """Fixed ceiling, or factor * p95 of completed durations when that is smaller."""
        ceiling = self.policy.stuck_threshold
        if self.policy.stuck_p95_factor <= 0:
            return ceiling
        with repository.read_snapshot(self.conn):
            durations = _durations(repository.completed_spans(self.conn))
        if not durations:
            return ceiling
        adaptive = timedelta(seconds=self.policy.stuck_p95_factor * percentile(durations, 95))
        return min(ceiling, adaptive)

    def job_status_stats(self) -> Dict[str, int]:
        with repository.read_snapshot(self.conn):
            now = self.clock()
            return repository.status_counts(self.conn, stuck_before=now - self.stuck_threshold())

    def failed_job_stats(self) -> Dict[str, int]:
        with repository.read_snapshot(self.conn):
            now = self.clock()
            return repository.failed_counts(self.conn, since_24h=now - DAY, since_1h=now - HOUR)

    def performance_metrics(self) -> Dict[str, float]:
        with repository.read_snapshot(self.conn):
            durations = _durations(repository.completed_spans(self.conn, since=self.clock() - DAY))
        if not durations:
            return {
                "jobs_completed_24h": 0,
                "avg_duration_seconds": 0.0,
                "min_duration_seconds": 0.0,
                "max_duration_seconds": 0.0,
                "median_duration_seconds": 0.0,
            }
        return {
            "jobs_completed_24h": len(durations),
            "avg_duration_seconds": sum(durations) / len(durations),
            "min_duration_seconds": min(durations),
            "max_duration_seconds": max(durations),
            "median_duration_seconds": median(durations),
        }

    # ---------- verdict ----------
    def health_problems(self) -> List[str]:
        with repository.read_snapshot(self.conn):
            return self._problems(
                self.job_status_stats(), self.failed_job_stats(), self.queue_status()
            )

    def _problems(self, stats, failed, queues) -> List[str]:
        p = self.policy
        problems = []
        if stats["stuck"] > 0:
            problems.append(f"{stats['stuck']} stuck job(s)")
        if stats["retrying"] > 0:
            # retry_job never commits this state
            problems.append(f"{stats['retrying']} job(s) stranded in retrying")
        if failed["recent_1h"] > p.max_failed_1h:
            problems.append(f"high failed job count: {failed['recent_1h']} in last hour (max {p.max_failed_1h})")
        if p.max_failure_rate_1h > 0 and failed["recent_1h"]:
            completed_1h = len(repository.completed_spans(self.conn, since=self.clock() - HOUR))
            rate = failed["recent_1h"] / (failed["recent_1h"] + completed_1h)
            if rate > p.max_failure_rate_1h:
                problems.append(f"failure rate {rate:.0%} in last hour (max {p.max_failure_rate_1h:.0%})")
        for queue, counts in queues.items():
            if queue != TOTAL_QUEUE and counts["pending"] > p.max_backlog_per_queue:
                problems.append(f"queue {queue} backlog {counts['pending']} (max {p.max_backlog_per_queue})")
        for problem in problems:
            logger.warning("Queue unhealthy: %s", problem)
        return problems

    def is_healthy(self) -> bool:
        return not self.health_problems()

    def snapshot(self) -> HealthSnapshot:
        with repository.read_snapshot(self.conn):
            now = self.clock()
            queues = self.queue_status()
            stats = self.job_status_stats()
            failed = self.failed_job_stats()
            performance = self.performance_metrics()
            problems = self._problems(stats, failed, queues)
        return HealthSnapshot(
            timestamp=now,
            queues=queues,
            job_stats=stats,
            failed_jobs=failed,
            performance=performance,
            healthy=not problems,
            problems=problems,
        )
