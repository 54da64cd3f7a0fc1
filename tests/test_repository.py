from datetime import timedelta

import pytest

from queuewatch import repository
from queuewatch.errors import StoreUnavailable
from queuewatch.utils import parse_iso


def test_enqueue_uses_configured_retry_budget(conn, now):
    repository.set_config(conn, "max_retries_default", "5")
    repository.enqueue_job(conn, job_id="a", command="echo a", now=now)

    job = repository.get_job(conn, "a")
    assert job.status == "pending"
    assert job.queue == "default"
    assert job.max_attempts == 5
    assert job.attempts == 0
    assert parse_iso(job.next_run_at) == now


@pytest.mark.parametrize("kwargs", [
    {"job_id": " ", "command": "echo"},
    {"job_id": "x", "command": ""},
    {"job_id": "x", "command": "echo", "queue": ""},
    {"job_id": "x", "command": "echo", "delay_seconds": 0},
    {"job_id": "x", "command": "echo", "run_at": "tomorrow"},
    {"job_id": "x", "command": "echo", "max_attempts": -1},
    {"job_id": "x", "command": "echo", "queue": "total"},
])
def test_enqueue_rejects_bad_input(conn, kwargs):
    with pytest.raises(ValueError):
        repository.enqueue_job(conn, **kwargs)


def test_enqueue_delay_and_run_at(conn, now):
    repository.enqueue_job(conn, job_id="later", command="echo", delay_seconds=90, now=now)
    repository.enqueue_job(conn, job_id="fixed", command="echo", run_at="2030-01-01T00:00:00", now=now)

    assert parse_iso(repository.get_job(conn, "later").next_run_at) == now + timedelta(seconds=90)
    assert repository.get_job(conn, "fixed").next_run_at == "2030-01-01T00:00:00.000000Z"


def test_claim_respects_priority_and_schedule(conn, now):
    repository.enqueue_job(conn, job_id="low", command="echo", priority=5, now=now)
    repository.enqueue_job(conn, job_id="high", command="echo", priority=1, now=now)
    repository.enqueue_job(conn, job_id="future", command="echo", priority=0, delay_seconds=60, now=now)

    first = repository.claim_one(conn, "w1", now=now)
    second = repository.claim_one(conn, "w1", now=now)

    assert (first.id, second.id) == ("high", "low")
    assert first.status == "processing"
    assert first.picked_by == "w1"
    assert parse_iso(first.started_at) == now
    assert repository.claim_one(conn, "w1", now=now) is None
    assert repository.claim_one(conn, "w1", now=now + timedelta(seconds=61)).id == "future"


def test_claim_filters_by_queue(conn, now):
    repository.enqueue_job(conn, job_id="e", command="echo", queue="emails", now=now)
    assert repository.claim_one(conn, "w1", queue="heavy", now=now) is None
    assert repository.claim_one(conn, "w1", queue="emails", now=now).id == "e"


def test_complete_and_fail_only_from_processing(conn, make_job, now):
    make_job("run-ok", "processing", started_at=now - timedelta(seconds=5))
    make_job("run-bad", "processing", started_at=now - timedelta(seconds=5))
    make_job("waiting", "pending")

    assert repository.complete(conn, "run-ok", now=now) is True
    assert repository.fail(conn, "run-bad", "exit_code=2", now=now) is True
    assert repository.complete(conn, "waiting", now=now) is False
    assert repository.fail(conn, "run-ok", "late", now=now) is False

    done = repository.get_job(conn, "run-ok")
    assert done.status == "completed"
    assert done.duration == pytest.approx(5.0)
    bad = repository.get_job(conn, "run-bad")
    assert bad.status == "failed"
    assert bad.last_error == "exit_code=2"
    assert parse_iso(bad.finished_at) == now
    assert bad.duration is None


def test_attempts_never_exceed_max(conn, make_job, now):
    make_job("j", "failed", attempts=3, max_attempts=3)
    assert repository.retry_job(conn, "j", now=now) is False
    assert repository.get_job(conn, "j").attempts == 3


def test_purge_terminal_keeps_retryable_failures(conn, make_job, now):
    old = now - timedelta(hours=48)
    make_job("done", "completed", started_at=old, finished_at=old)
    make_job("dead", "failed", attempts=3, max_attempts=3, finished_at=old)
    make_job("retryable", "failed", attempts=1, finished_at=old)
    make_job("recent", "completed", started_at=now, finished_at=now)

    purged = repository.purge_terminal(conn, before=now - timedelta(hours=24))

    assert purged == 2
    assert sorted(j.id for j in repository.list_jobs(conn)) == ["recent", "retryable"]


def test_restart_signal_round_trip(conn, now):
    assert repository.restart_requested_at(conn) is None
    repository.request_worker_restart(conn, now=now)
    assert repository.restart_requested_at(conn) == now


def test_set_config_rejects_unknown_key(conn):
    with pytest.raises(ValueError):
        repository.set_config(conn, "restart_requested_at", "2025-01-01T00:00:00Z")


def test_read_snapshot_is_reentrant(conn):
    with repository.read_snapshot(conn):
        assert conn.in_transaction
        with repository.read_snapshot(conn):
            repository.queue_counts(conn)
        assert conn.in_transaction
    assert not conn.in_transaction


def test_store_errors_are_wrapped(conn):
    conn.close()
    with pytest.raises(StoreUnavailable):
        repository.get_job(conn, "x")
    with pytest.raises(StoreUnavailable):
        with repository.read_snapshot(conn):
            pass


def test_retry_job_commits_both_steps_together(conn, make_job, now):
    make_job("j", "failed", attempts=1)

    assert repository.retry_job(conn, "j", delay_seconds=8, now=now) is True

    job = repository.get_job(conn, "j")
    assert job.status == "pending"
    assert job.attempts == 2
    assert parse_iso(job.next_run_at) == now + timedelta(seconds=8)
    assert repository.retry_job(conn, "j", now=now) is False
