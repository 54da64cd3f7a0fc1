import enum
import json

import click

from .config import TOTAL_QUEUE
from .health import HealthSnapshot
from .utils import now_iso


class ReportMode(enum.Enum):
    """How `monitor` presents a snapshot.

    Precedence when several flags are given: CHECK, then JSON, then VERBOSE,
    then TABLE. --check ignores every other flag and prints nothing.
    """

    TABLE = "table"
    VERBOSE = "verbose"
    JSON = "json"
    CHECK = "check"

    @classmethod
    def from_flags(cls, *, check: bool = False, as_json: bool = False, verbose: bool = False) -> "ReportMode":
        if check:
            return cls.CHECK
        if as_json:
            return cls.JSON
        if verbose:
            return cls.VERBOSE
        return cls.TABLE


def render_json(snapshot: HealthSnapshot) -> str:
    return json.dumps(snapshot.to_dict(), indent=2)


def render_json_error(message: str) -> str:
    return json.dumps({"timestamp": now_iso(), "error": message, "healthy": False}, indent=2)


def echo_table(snapshot: HealthSnapshot, verbose: bool = False):
    click.secho("Queue Health Monitor", fg="cyan", bold=True)
    click.echo("====================")
    click.echo()

    click.secho("Queue Status:", fg="cyan")
    width = max([len("Queue")] + [len(q) for q in snapshot.queues])
    click.echo(f"  {'Queue':<{width}} | {'Pending':>8} | {'Processing':>10}")
    click.echo(f"  {'-' * width}-+-{'-' * 8}-+-{'-' * 10}")
    for queue, data in snapshot.queues.items():
        if queue == TOTAL_QUEUE:
            continue
        click.echo(f"  {queue:<{width}} | {data['pending']:>8} | {data['processing']:>10}")
    total = snapshot.queues[TOTAL_QUEUE]
    click.echo(f"  {'TOTAL':<{width}} | {total['pending']:>8} | {total['processing']:>10}")
    click.echo()

    s = snapshot.job_stats
    click.secho("Job Statistics:", fg="cyan")
    click.echo(f"  Pending:    {s['pending']}")
    click.echo(f"  Processing: {s['processing']}")
    click.echo(f"  Completed:  {s['completed']}")
    click.echo(f"  Failed:     {s['failed']}")
    click.echo(f"  Retrying:   {s['retrying']}")
    click.secho(f"  Stuck:      {s['stuck']}", fg="yellow" if s["stuck"] else None)
    click.echo()

    f = snapshot.failed_jobs
    click.secho("Failed Jobs:", fg="cyan")
    click.echo(f"  Total:       {f['total']}")
    click.echo(f"  Last 24h:    {f['recent_24h']}")
    click.echo(f"  Last 1h:     {f['recent_1h']}")
    click.echo(f"  Dead-letter: {f['dead_lettered']}")
    click.echo()

    if verbose:
        p = snapshot.performance
        click.secho("Performance (24h):", fg="cyan")
        click.echo(f"  Completed:    {p['jobs_completed_24h']} jobs")
        click.echo(f"  Avg Duration: {p['avg_duration_seconds']:.2f}s")
        click.echo(f"  Min Duration: {p['min_duration_seconds']:.2f}s")
        click.echo(f"  Max Duration: {p['max_duration_seconds']:.2f}s")
        click.echo(f"  Median:       {p['median_duration_seconds']:.2f}s")
        click.echo()

    if snapshot.healthy:
        click.secho("✓ Queue is healthy", fg="green")
    else:
        click.secho("✗ Queue health check failed", fg="red")
        for problem in snapshot.problems:
            click.secho(f"  - {problem}", fg="red")
