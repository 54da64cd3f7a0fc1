import asyncio
import json
import logging

import click

from . import tasks
from .db import connect_db, init_db
from .errors import JobNotFound, StoreUnavailable
from .events import LoggingEventSink
from .health import QueueHealth
from .leases import InMemoryLeaseProvider, RedisLeaseProvider
from .logs import configure_logging
from .models import STATES
from .report import ReportMode, echo_table, render_json, render_json_error
from .repository import (
    enqueue_job, get_job, list_jobs, get_config, set_config, request_worker_restart,
)
from .retry import RetryOrchestrator
from .config import RetryPolicy
from .worker import start_workers


def open_store():
    try:
        init_db()
        return connect_db()
    except StoreUnavailable as e:
        fail_with(e)


def fail_with(e):
    click.secho(f"Error: {e}", fg="red", err=True)
    raise SystemExit(1)


@click.group(help="queuewatch: queue health monitoring and job lifecycle CLI")
@click.option("--log-level", default="WARNING", show_default=True, envvar="QUEUEWATCH_LOG_LEVEL")
@click.pass_context
def cli(ctx, log_level):
    configure_logging(log_level)
    ctx.ensure_object(dict)
    # long-running services log at INFO unless a level was given explicitly
    explicit = ctx.get_parameter_source("log_level") is not click.core.ParameterSource.DEFAULT
    ctx.obj["service_log_level"] = log_level if explicit else "INFO"
    ctx.obj["log_level_explicit"] = explicit


# ---------- Monitor ----------
@cli.command("monitor", help="Monitor queue health and display statistics")
@click.option("--verbose", is_flag=True, help="Also show performance metrics")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--check", is_flag=True, help="Only set the exit code from the health verdict")
@click.pass_context
def monitor_cmd(ctx, verbose, as_json, check):
    mode = ReportMode.from_flags(check=check, as_json=as_json, verbose=verbose)
    if mode is ReportMode.CHECK and not ctx.obj["log_level_explicit"]:
        # --check prints nothing, warnings included
        logging.getLogger().setLevel(logging.ERROR)
    conn = None
    try:
        init_db()
        conn = connect_db()
        engine = QueueHealth(conn)
        if mode is ReportMode.CHECK:
            raise SystemExit(0 if engine.is_healthy() else 1)
        snapshot = engine.snapshot()
    except (StoreUnavailable, ValueError) as e:
        if mode is ReportMode.CHECK:
            raise SystemExit(1)
        if mode is ReportMode.JSON:
            click.echo(render_json_error(str(e)))
            raise SystemExit(1)
        fail_with(e)
    finally:
        if conn is not None:
            conn.close()

    if mode is ReportMode.JSON:
        click.echo(render_json(snapshot))
        return

    echo_table(snapshot, verbose=mode is ReportMode.VERBOSE)
    if not snapshot.healthy:
        raise SystemExit(1)


# ---------- Retry ----------
@cli.command("retry-failed", help="Retry failed jobs that still have attempts left")
@click.option("--all", "retry_all", is_flag=True, help="Ignore the retry window")
@click.option("--hours", type=click.IntRange(min=1), default=None, help="Only jobs that failed in the last N hours")
@click.option("--job", "job_id", default=None, help="Retry a single job")
@click.option("--dry-run", is_flag=True, help="Show what would be done without executing")
def retry_failed_cmd(retry_all, hours, job_id, dry_run):
    conn = open_store()
    try:
        cfg = get_config(conn)
        policy = RetryPolicy(window=None) if retry_all else RetryPolicy.from_config(cfg, hours=hours)
        orchestrator = RetryOrchestrator(conn, policy=policy)

        if job_id:
            job = get_job(conn, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found.")
            if dry_run:
                click.echo(f"DRY RUN: would retry {job_id} ({job.status}, attempts={job.attempts}/{job.max_attempts})")
                return
            outcome = orchestrator.retry(job)
            click.echo(f"{job_id}: {outcome.result}" + (f" ({outcome.reason})" if outcome.reason else ""))
            return

        eligible = orchestrator.retry_eligible()
        scope = "all time" if policy.window is None else f"last {int(policy.window.total_seconds() // 3600)} hours"
        click.echo(f"Found {len(eligible)} retryable failed jobs ({scope})")
        if dry_run:
            for job in eligible:
                click.echo(f"  would retry {job.id} attempts={job.attempts}/{job.max_attempts}")
            return
        report = orchestrator.run()
        click.echo(json.dumps(report.to_dict()))
    except (StoreUnavailable, JobNotFound, ValueError) as e:
        fail_with(e)
    finally:
        conn.close()


# ---------- Flush / restart / reminders ----------
@cli.command("flush", help="Purge completed and dead-lettered jobs past retention")
@click.option("--hours", type=click.IntRange(min=0), default=None, help="Override retention_hours")
def flush_cmd(hours):
    conn = open_store()
    try:
        purged = tasks.flush_terminal_jobs(conn, hours=hours)
        click.secho(f"Purged {purged} terminal job(s).", fg="green")
    except (StoreUnavailable, ValueError) as e:
        fail_with(e)
    finally:
        conn.close()


@cli.command("restart-workers", help="Signal running workers to exit after their current job")
def restart_workers_cmd():
    conn = open_store()
    try:
        ts = request_worker_restart(conn)
        click.secho(f"Restart signal sent at {ts}.", fg="green")
    except StoreUnavailable as e:
        fail_with(e)
    finally:
        conn.close()


@cli.command("process-reminders", help="Dispatch the notification reminder job")
@click.option("--dry-run", is_flag=True)
def process_reminders_cmd(dry_run):
    conn = open_store()
    try:
        job_id = tasks.dispatch_reminders(conn, dry_run=dry_run)
        if dry_run:
            click.secho(f"DRY RUN: would enqueue {job_id}", fg="yellow")
        else:
            click.secho(f"Enqueued {job_id} on {tasks.NOTIFICATIONS_QUEUE}", fg="green")
    except (StoreUnavailable, ValueError) as e:
        fail_with(e)
    finally:
        conn.close()


# ---------- Scheduler ----------
@cli.command("schedule", help="Run the periodic task coordinator")
@click.option("--redis-url", envvar="REDIS_URL", default=None,
              help="Redis for cluster-wide leases; without it leases are local to this process")
@click.option("--log-dir", default=None, help="Directory for report, scheduler and alert logs")
@click.option("--poll-interval", type=float, default=1.0, show_default=True)
@click.option("--metrics-port", type=int, default=None, help="Expose prometheus metrics on this port")
@click.option("--node-id", default=None)
@click.pass_context
def schedule_cmd(ctx, redis_url, log_dir, poll_interval, metrics_port, node_id):
    from .metrics import serve
    from .scheduler import Coordinator

    init_db()
    configure_logging(ctx.obj["service_log_level"], log_dir, tasks.REPORT_TASKS)
    if metrics_port:
        serve(metrics_port)
    leases = RedisLeaseProvider.from_url(redis_url) if redis_url else InMemoryLeaseProvider()
    coordinator = Coordinator(tasks.default_schedule(), leases, LoggingEventSink(), node_id=node_id)
    click.secho(f"Coordinator {coordinator.node_id} running. Press Ctrl+C to stop…", fg="cyan")
    try:
        asyncio.run(coordinator.run_forever(poll_interval=poll_interval))
    except KeyboardInterrupt:
        click.secho("Coordinator stopped.", fg="yellow")


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a new job to the queue")
@click.option("--id", "job_id", required=True, help="Job ID")
@click.option("--cmd", "command", required=True, help="Command to execute")
@click.option("--queue", default="default", show_default=True)
@click.option("--max-attempts", default=None, type=int, help="Override retry budget")
@click.option("--priority", default=0, type=int, show_default=True,
              help="Lower number = higher priority (min-heap style)")
@click.option("--run-at", default=None, help="ISO datetime (UTC when no offset is given)")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h (mutually exclusive with --run-at)")
def enqueue_cmd(job_id, command, queue, max_attempts, priority, run_at, delay_str):
    conn = open_store()
    try:
        if run_at and delay_str:
            raise click.ClickException("Use either --run-at or --delay, not both.")

        delay_seconds = None
        if delay_str:
            from .utils import parse_delay_to_seconds
            delay_seconds = parse_delay_to_seconds(delay_str)

        enqueue_job(
            conn,
            job_id=job_id,
            command=command,
            queue=queue,
            max_attempts=max_attempts,
            priority=priority,
            run_at=run_at,
            delay_seconds=delay_seconds,
        )
        click.secho(f"Enqueued {job_id} -> `{command}` (queue={queue}, priority={priority})", fg="green")
    except (ValueError, StoreUnavailable, click.ClickException) as e:
        fail_with(e.format_message() if isinstance(e, click.ClickException) else e)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--queue", default=None, help="Only claim jobs from this queue")
@click.pass_context
def worker_start(ctx, count, queue):
    init_db()
    configure_logging(ctx.obj["service_log_level"])
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, queue=queue)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--status", type=click.Choice(STATES), default=None)
@click.option("--queue", default=None)
def list_cmd(status, queue):
    conn = open_store()
    try:
        jobs = list_jobs(conn, status=status, queue=queue)
    except StoreUnavailable as e:
        fail_with(e)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        duration = f"{j.duration:.2f}s" if j.duration is not None else "-"
        click.echo(
            f"{j.id:>20} | {j.queue:<13} | {j.status:<10} | attempts={j.attempts}/{j.max_attempts} "
            f"| started={j.started_at} | duration={duration} | cmd={j.command} | last_error={j.last_error}"
        )


# ---------- DLQ ----------
@cli.group("dlq", help="Dead-lettered jobs (failed with no attempts left)")
def dlq_group():
    pass


@dlq_group.command("list")
def dlq_list_cmd():
    conn = open_store()
    try:
        dead = [j for j in list_jobs(conn, status="failed") if j.dead_lettered]
    except StoreUnavailable as e:
        fail_with(e)
    finally:
        conn.close()

    if not dead:
        click.echo("DLQ is empty.")
        return

    for j in dead:
        click.echo(f"{j.id} | queue={j.queue} | attempts={j.attempts} | last_error={j.last_error} | cmd={j.command}")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
def config_get():
    conn = open_store()
    try:
        click.echo(json.dumps(get_config(conn), indent=2, sort_keys=True))
    except StoreUnavailable as e:
        fail_with(e)
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set_cmd(key, value):
    conn = open_store()
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except (ValueError, StoreUnavailable) as e:
        fail_with(e)
    finally:
        conn.close()


def main():
    cli()
