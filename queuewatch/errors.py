class QueueWatchError(Exception):
    """Base class for errors raised by queuewatch."""


class StoreUnavailable(QueueWatchError):
    """The job store could not be read or written."""


class JobNotFound(QueueWatchError):
    pass


class UnhealthyQueue(QueueWatchError):
    """Raised by the scheduled health probe so the failure reaches the alert channel."""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__("queue health check failed: " + "; ".join(self.problems))
