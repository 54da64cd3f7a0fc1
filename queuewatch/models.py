from dataclasses import dataclass
from typing import Optional

from .utils import parse_iso

# Job States
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
RETRYING = "retrying"

STATES = (PENDING, PROCESSING, COMPLETED, FAILED, RETRYING)

DEFAULT_QUEUE = "default"


def span_seconds(started_at: Optional[str], finished_at: Optional[str]) -> Optional[float]:
    start, end = parse_iso(started_at), parse_iso(finished_at)
    if start is None or end is None:
        return None
    return (end - start).total_seconds()


@dataclass
class Job:
    id: str
    command: str
    queue: str = DEFAULT_QUEUE
    status: str = PENDING
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    created_at: str = ""
    updated_at: str = ""
    next_run_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_error: Optional[str] = None
    picked_by: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(**{k: row[k] for k in row.keys() if k in cls.__dataclass_fields__})

    @property
    def dead_lettered(self) -> bool:
        return self.status == FAILED and self.attempts >= self.max_attempts

    @property
    def duration(self) -> Optional[float]:
        """Seconds between start and finish; only defined for completed jobs."""
        if self.status != COMPLETED:
            return None
        return span_seconds(self.started_at, self.finished_at)
