import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, List, Optional

from . import repository
from .config import RetryPolicy
from .errors import StoreUnavailable
from .models import Job, FAILED
from .utils import utcnow

logger = logging.getLogger(__name__)

REQUEUED = "requeued"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class RetryOutcome:
    job_id: str
    result: str
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result == REQUEUED


@dataclass
class RetryReport:
    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, outcome: RetryOutcome):
        self.attempted += 1
        if outcome.result == REQUEUED:
            self.succeeded += 1
        elif outcome.result == SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict:
        return asdict(self)


class RetryOrchestrator:
    """Moves failed jobs back to pending under the attempts cap.

    `retry` is safe under at-least-once invocation: the failed -> retrying
    transition is a compare-and-swap, so concurrent callers consume at most
    one attempt between them. Both steps of a retry commit together, so a
    store error leaves the job failed with its attempt unspent.
    """

    def __init__(self, conn, policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], datetime] = utcnow, backoff_base: Optional[int] = None):
        self.conn = conn
        cfg = None
        if policy is None or backoff_base is None:
            cfg = repository.get_config(conn)
        self.policy = policy or RetryPolicy.from_config(cfg)
        self.backoff_base = backoff_base if backoff_base is not None else int(cfg.get("backoff_base", "2"))
        self.clock = clock

    def retry_eligible(self) -> List[Job]:
        since = self.clock() - self.policy.window if self.policy.window else None
        return repository.retryable_failed(self.conn, since=since)

    def retry(self, job: Job) -> RetryOutcome:
        now = self.clock()
        try:
            delay = self.backoff_base ** (job.attempts + 1) if self.backoff_base > 1 else 0
            if not repository.retry_job(self.conn, job.id, delay_seconds=delay, now=now):
                return RetryOutcome(job.id, SKIPPED, self._skip_reason(job.id))
        except StoreUnavailable as e:
            logger.error("Failed to retry job %s: %s", job.id, e)
            return RetryOutcome(job.id, ERROR, str(e))
        logger.info("Retried job %s (attempt %d/%d)", job.id, job.attempts + 1, job.max_attempts)
        return RetryOutcome(job.id, REQUEUED)

    def _skip_reason(self, job_id: str) -> str:
        current = repository.get_job(self.conn, job_id)
        if current is None:
            return "not found"
        if current.status != FAILED:
            return f"already {current.status}"
        return "attempts exhausted"

    def run(self, dry_run: bool = False) -> RetryReport:
        report = RetryReport()
        jobs = self.retry_eligible()
        if dry_run:
            report.attempted = len(jobs)
            return report
        released = repository.release_stranded(self.conn, now=self.clock())
        if released:
            logger.warning("Released %d job(s) stranded in retrying back to pending", released)
        for job in jobs:
            report.add(self.retry(job))
        logger.info(
            "Retry run: attempted=%d succeeded=%d skipped=%d failed=%d",
            report.attempted, report.succeeded, report.skipped, report.failed,
        )
        return report
