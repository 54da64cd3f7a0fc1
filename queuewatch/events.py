import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from . import metrics
from .logs import ALERTS_LOGGER, SCHEDULER_LOGGER

RAN = "ran"
SKIPPED = "skipped"
FAILED = "failed"


class EventSink(ABC):
    """Receives the outcome of every scheduled task dispatch."""

    @abstractmethod
    def on_success(self, task_name: str, meta: Dict[str, Any]):
        ...

    @abstractmethod
    def on_failure(self, task_name: str, err: BaseException, meta: Optional[Dict[str, Any]] = None):
        ...

    @abstractmethod
    def on_skipped(self, task_name: str, reason: str, meta: Optional[Dict[str, Any]] = None):
        ...


class LoggingEventSink(EventSink):
    def __init__(self, scheduler_log: Optional[logging.Logger] = None,
                 alert_log: Optional[logging.Logger] = None):
        self.scheduler_log = scheduler_log or logging.getLogger(SCHEDULER_LOGGER)
        self.alert_log = alert_log or logging.getLogger(ALERTS_LOGGER)

    def on_success(self, task_name, meta):
        metrics.task_runs_total.labels(task=task_name, outcome=RAN).inc()
        if "elapsed" in meta:
            metrics.task_duration_seconds.labels(task=task_name).observe(meta["elapsed"])
        self.scheduler_log.info("Task %s completed successfully %s", task_name, meta)

    def on_failure(self, task_name, err, meta=None):
        metrics.task_runs_total.labels(task=task_name, outcome=FAILED).inc()
        self.alert_log.error("Task %s failed: %s %s", task_name, str(err) or type(err).__name__, meta or {})

    def on_skipped(self, task_name, reason, meta=None):
        metrics.task_runs_total.labels(task=task_name, outcome=SKIPPED).inc()
        self.scheduler_log.debug("Task %s skipped (%s) %s", task_name, reason, meta or {})


class RecordingEventSink(EventSink):
    """Keeps events in memory."""

    def __init__(self):
        self.events: List[Tuple[str, str, Any]] = []

    def on_success(self, task_name, meta):
        self.events.append((RAN, task_name, meta))

    def on_failure(self, task_name, err, meta=None):
        self.events.append((FAILED, task_name, err))

    def on_skipped(self, task_name, reason, meta=None):
        self.events.append((SKIPPED, task_name, reason))

    def of(self, kind: str, task_name: Optional[str] = None):
        return [e for e in self.events if e[0] == kind and (task_name is None or e[1] == task_name)]
