from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional, Tuple

DEFAULT_CONFIG = {
    "backoff_base": "2",
    "max_retries_default": "3",
    "timeout_seconds": "20",
    "queues": "default,emails,notifications,heavy",
    # health policy
    "stuck_threshold_seconds": "3600",
    "stuck_threshold_p95_factor": "0",   # 0 = fixed ceiling only
    "max_failed_1h": "100",
    "max_failure_rate_1h": "0",          # 0 = rate check off
    "max_backlog_per_queue": "1000",
    # retry / flush
    "retry_window_hours": "24",          # 0 = no age limit
    "retention_hours": "24",
    "reminder_command": "echo process-reminders",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

# Written by `restart-workers`, not user-settable.
RESTART_KEY = "restart_requested_at"

# Aggregate row of the queue status report; no job queue may use it.
TOTAL_QUEUE = "total"


def _number(cfg: Mapping[str, str], key: str, cast=float):
    raw = cfg.get(key, DEFAULT_CONFIG[key])
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Config {key} must be a number, got {raw!r}")
    if value < 0:
        raise ValueError(f"Config {key} must be >= 0, got {raw!r}")
    return value


def _queue_names(raw: str) -> Tuple[str, ...]:
    names = tuple(q.strip() for q in raw.split(",") if q.strip())
    if TOTAL_QUEUE in names:
        raise ValueError(f"'{TOTAL_QUEUE}' is reserved and cannot be a queue name.")
    return names


def validate_config_value(key: str, value: str) -> None:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in ("queues", "reminder_command"):
        if not value.strip():
            raise ValueError(f"Config {key} cannot be empty.")
        if key == "queues":
            _queue_names(value)
        return
    cast = float if key in ("stuck_threshold_p95_factor", "max_failure_rate_1h") else int
    _number({key: value}, key, cast)


@dataclass(frozen=True)
class HealthPolicy:
    """Thresholds the health engine judges a snapshot against."""

    stuck_threshold: timedelta = timedelta(hours=1)
    stuck_p95_factor: float = 0.0
    max_failed_1h: int = 100
    max_failure_rate_1h: float = 0.0
    max_backlog_per_queue: int = 1000
    queues: Tuple[str, ...] = ("default", "emails", "notifications", "heavy")

    @classmethod
    def from_config(cls, cfg: Mapping[str, str]) -> "HealthPolicy":
        queues = _queue_names(cfg.get("queues", DEFAULT_CONFIG["queues"]))
        return cls(
            stuck_threshold=timedelta(seconds=_number(cfg, "stuck_threshold_seconds", int)),
            stuck_p95_factor=_number(cfg, "stuck_threshold_p95_factor"),
            max_failed_1h=_number(cfg, "max_failed_1h", int),
            max_failure_rate_1h=_number(cfg, "max_failure_rate_1h"),
            max_backlog_per_queue=_number(cfg, "max_backlog_per_queue", int),
            queues=queues,
        )


@dataclass(frozen=True)
class RetryPolicy:
    # None means no age limit
    window: Optional[timedelta] = timedelta(hours=24)

    @classmethod
    def from_config(cls, cfg: Mapping[str, str], hours: Optional[int] = None) -> "RetryPolicy":
        if hours is None:
            hours = _number(cfg, "retry_window_hours", int)
        return cls(window=timedelta(hours=hours) if hours else None)

