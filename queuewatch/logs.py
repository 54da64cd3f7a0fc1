import logging
import os
from typing import Iterable, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

SCHEDULER_LOGGER = "queuewatch.scheduler"
ALERTS_LOGGER = "queuewatch.alerts"
REPORT_LOGGER = "queuewatch.report"


def report_logger(task_name: str) -> logging.Logger:
    return logging.getLogger(f"{REPORT_LOGGER}.{task_name}")


def _append_handler(logger_name: str, path: str):
    logger = logging.getLogger(logger_name)
    for h in logger.handlers:
        if isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(path):
            return
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None,
                      report_tasks: Iterable[str] = ()):
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric)
    if not log_dir:
        return
    os.makedirs(log_dir, exist_ok=True)
    # report and alert channels always record, whatever the console level
    for name in (SCHEDULER_LOGGER, ALERTS_LOGGER, REPORT_LOGGER):
        logging.getLogger(name).setLevel(logging.INFO)
    _append_handler(SCHEDULER_LOGGER, os.path.join(log_dir, "scheduler.log"))
    _append_handler(ALERTS_LOGGER, os.path.join(log_dir, "alerts.log"))
    for task in report_tasks:
        _append_handler(f"{REPORT_LOGGER}.{task}", os.path.join(log_dir, f"{task}.log"))
