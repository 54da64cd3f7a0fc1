from prometheus_client import Counter, Gauge, Histogram, start_http_server

# Keep metrics module-level singletons
task_runs_total = Counter(
    "queuewatch_task_runs_total", "Scheduled task executions by outcome", ["task", "outcome"]
)
task_duration_seconds = Histogram(
    "queuewatch_task_duration_seconds", "Scheduled task wall time", ["task"]
)

jobs_pending = Gauge("queuewatch_jobs_pending", "Pending jobs per queue", ["queue"])
jobs_processing = Gauge("queuewatch_jobs_processing", "Processing jobs per queue", ["queue"])
jobs_stuck = Gauge("queuewatch_jobs_stuck", "Jobs processing longer than the stuck threshold")
jobs_failed_1h = Gauge("queuewatch_jobs_failed_1h", "Failed jobs in the last hour")
queue_healthy = Gauge("queuewatch_queue_healthy", "1 if the last health probe passed")


def observe_snapshot(snapshot):
    for queue, counts in snapshot.queues.items():
        jobs_pending.labels(queue=queue).set(counts["pending"])
        jobs_processing.labels(queue=queue).set(counts["processing"])
    jobs_stuck.set(snapshot.job_stats["stuck"])
    jobs_failed_1h.set(snapshot.failed_jobs["recent_1h"])
    queue_healthy.set(1 if snapshot.healthy else 0)


def serve(port: int):
    start_http_server(port)
