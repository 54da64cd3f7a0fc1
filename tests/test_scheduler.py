import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import pytest

from queuewatch.events import FAILED, RAN, SKIPPED, EventSink, RecordingEventSink
from queuewatch.leases import LEASE_PREFIX, InMemoryLeaseProvider, LeaseProvider, RedisLeaseProvider
from queuewatch.scheduler import (
    LEASE_HELD, OVERLAP, Coordinator, DailyAt, Every, Schedule, TaskSpec, lease_key,
)

T0 = datetime(2025, 11, 6, 12, 0, 0, tzinfo=timezone.utc)


class Counter:
    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
        return self.calls


class AsyncInMemoryRedis:
    """Just enough of redis.asyncio for SET NX PX."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._keys: Dict[str, Tuple[str, float]] = {}
        self.closed = False

    async def set(self, name: str, value: str, nx: bool = False, px: Optional[int] = None):
        now = self._clock()
        held = self._keys.get(name)
        if nx and held is not None and held[1] > now:
            return None
        self._keys[name] = (value, now + (px / 1000.0 if px else float("inf")))
        return True

    async def get(self, name: str) -> Optional[str]:
        held = self._keys.get(name)
        return held[0] if held and held[1] > self._clock() else None

    async def aclose(self):
        self.closed = True


class BrokenLeases(LeaseProvider):
    async def acquire(self, key, owner, ttl):
        raise ConnectionError("redis unreachable")


def test_every_aligns_to_epoch():
    assert Every(300).last_tick(T0 + timedelta(minutes=4, seconds=59)) == T0
    assert Every(300).last_tick(T0 + timedelta(minutes=5)) == T0 + timedelta(minutes=5)
    assert Every(3600).last_tick(T0 + timedelta(minutes=59)) == T0
    with pytest.raises(ValueError):
        Every(0)


def test_daily_at_uses_previous_day_before_the_time():
    cadence = DailyAt(2, 0)
    assert cadence.last_tick(T0) == datetime(2025, 11, 6, 2, 0, tzinfo=timezone.utc)
    early = datetime(2025, 11, 6, 1, 59, tzinfo=timezone.utc)
    assert cadence.last_tick(early) == datetime(2025, 11, 5, 2, 0, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        DailyAt(24, 0)


def test_schedule_rejects_duplicate_names():
    spec = TaskSpec("a", Every(60), lambda: None)
    with pytest.raises(ValueError):
        Schedule([spec, spec])
    assert Schedule([spec]).get("a") is spec


def test_lease_key_includes_tick():
    spec = TaskSpec("flush", DailyAt(2), lambda: None, deadline=10, lease_margin=5)
    assert lease_key(spec, T0) == "flush:2025-11-06T12:00:00.000000Z"
    assert spec.lease_ttl == 15


@pytest.mark.asyncio
async def test_exclusive_task_runs_once_across_nodes():
    action = Counter()
    schedule = Schedule([TaskSpec("retry", Every(60), action, deadline=5)])
    leases = InMemoryLeaseProvider()
    events = RecordingEventSink()
    nodes = [Coordinator(schedule, leases, events, node_id=f"node-{i}") for i in range(5)]

    results = await asyncio.gather(*(n.dispatch_due(T0 + timedelta(seconds=1)) for n in nodes))
    for n in nodes:
        await n.drain()

    decisions = sorted(d.decision for batch in results for d in batch)
    assert decisions == [RAN] + [SKIPPED] * 4
    assert action.calls == 1
    assert len(events.of(RAN, "retry")) == 1
    assert [e[2] for e in events.of(SKIPPED, "retry")] == [LEASE_HELD] * 4
    assert leases.holder("retry:2025-11-06T12:00:00.000000Z") is not None


@pytest.mark.asyncio
async def test_non_exclusive_task_runs_on_every_node():
    action = Counter()
    schedule = Schedule([TaskSpec("report", Every(300), action, exclusive=False, deadline=5)])
    leases = InMemoryLeaseProvider()
    events = RecordingEventSink()
    nodes = [Coordinator(schedule, leases, events, node_id=f"node-{i}") for i in range(3)]

    for n in nodes:
        await n.dispatch_due(T0)
    for n in nodes:
        await n.drain()

    assert action.calls == 3
    assert len(events.of(RAN, "report")) == 3


@pytest.mark.asyncio
async def test_next_tick_is_skipped_while_previous_run_is_in_flight():
    release = threading.Event()
    schedule = Schedule([TaskSpec("slow", Every(60), lambda: release.wait(5), deadline=10)])
    events = RecordingEventSink()
    node = Coordinator(schedule, InMemoryLeaseProvider(), events, node_id="n1")

    first = await node.dispatch_due(T0)
    second = await node.dispatch_due(T0 + timedelta(seconds=60))

    assert first[0].decision == RAN
    assert second[0].decision == SKIPPED
    assert second[0].reason == OVERLAP
    assert node.running() == ["slow"]

    release.set()
    await node.drain()
    assert node.running() == []
    assert len(events.of(RAN, "slow")) == 1
    assert events.of(SKIPPED, "slow") == [(SKIPPED, "slow", OVERLAP)]


@pytest.mark.asyncio
async def test_deadline_overrun_reports_failure_and_holds_guard():
    release = threading.Event()
    schedule = Schedule([TaskSpec("stuck", Every(60), lambda: release.wait(5), deadline=0.05)])
    events = RecordingEventSink()
    node = Coordinator(schedule, InMemoryLeaseProvider(), events, node_id="n1")

    await node.dispatch_due(T0)
    await asyncio.sleep(0.3)

    failures = events.of(FAILED, "stuck")
    assert len(failures) == 1
    assert isinstance(failures[0][2], TimeoutError)
    # the thread is still running, so the next tick must not start a second copy
    assert node.running() == ["stuck"]
    skipped = await node.dispatch_due(T0 + timedelta(seconds=60))
    assert skipped[0].reason == OVERLAP

    release.set()
    await node.drain()
    assert events.of(RAN, "stuck") == []


@pytest.mark.asyncio
async def test_task_exception_becomes_failure_event():
    def boom():
        raise RuntimeError("queue unhealthy")

    events = RecordingEventSink()
    node = Coordinator(Schedule([TaskSpec("probe", Every(60), boom, deadline=5)]),
                       InMemoryLeaseProvider(), events, node_id="n1")

    await node.dispatch_due(T0)
    await node.drain()

    failures = events.of(FAILED, "probe")
    assert len(failures) == 1
    assert str(failures[0][2]) == "queue unhealthy"
    assert events.of(RAN) == []


@pytest.mark.asyncio
async def test_success_event_carries_result_and_elapsed():
    events = RecordingEventSink()
    node = Coordinator(Schedule([TaskSpec("flush", Every(60), lambda: 7, deadline=5)]),
                       InMemoryLeaseProvider(), events, node_id="n1")

    await node.dispatch_due(T0)
    await node.drain()

    (_, _, meta), = events.of(RAN, "flush")
    assert meta["result"] == 7
    assert meta["node"] == "n1"
    assert meta["tick"] == "2025-11-06T12:00:00.000000Z"
    assert meta["elapsed"] >= 0


@pytest.mark.asyncio
async def test_tick_is_dispatched_once_and_misfires_are_not_caught_up():
    action = Counter()
    node = Coordinator(Schedule([TaskSpec("t", Every(300), action, deadline=5)]),
                       InMemoryLeaseProvider(), RecordingEventSink(), node_id="n1",
                       misfire_grace=60)

    assert await node.dispatch_due(T0 + timedelta(seconds=120)) == []
    assert len(await node.dispatch_due(T0 + timedelta(seconds=300))) == 1
    assert await node.dispatch_due(T0 + timedelta(seconds=310)) == []
    await node.drain()
    assert action.calls == 1


@pytest.mark.asyncio
async def test_lease_backend_error_fails_the_tick_without_running():
    action = Counter()
    events = RecordingEventSink()
    node = Coordinator(Schedule([TaskSpec("retry", Every(60), action, deadline=5)]),
                       BrokenLeases(), events, node_id="n1")

    dispatches = await node.dispatch_due(T0)
    await node.drain()

    assert dispatches[0].decision == FAILED
    assert dispatches[0].reason == "lease-error"
    assert isinstance(events.of(FAILED, "retry")[0][2], ConnectionError)
    assert action.calls == 0


@pytest.mark.asyncio
async def test_in_memory_lease_expires_after_ttl():
    now = [100.0]
    leases = InMemoryLeaseProvider(clock=lambda: now[0])

    assert await leases.acquire("k", "a", 10) is True
    assert await leases.acquire("k", "b", 10) is False
    assert leases.holder("k") == "a"
    now[0] = 111.0
    assert leases.holder("k") is None
    assert await leases.acquire("k", "b", 10) is True


@pytest.mark.asyncio
async def test_redis_lease_provider_uses_set_nx_px():
    client = AsyncInMemoryRedis()
    first, second = RedisLeaseProvider(client), RedisLeaseProvider(client)

    assert await first.acquire("flush:tick", "node-a", 30) is True
    assert await second.acquire("flush:tick", "node-b", 30) is False
    assert await client.get(LEASE_PREFIX + "flush:tick") == "node-a"

    await first.close()
    assert client.closed


@pytest.mark.asyncio
async def test_redis_leases_elect_one_runner():
    action = Counter()
    client = AsyncInMemoryRedis()
    schedule = Schedule([TaskSpec("restart", Every(60), action, deadline=5)])
    events = RecordingEventSink()
    nodes = [Coordinator(schedule, RedisLeaseProvider(client), events, node_id=f"n{i}") for i in range(3)]

    for n in nodes:
        await n.dispatch_due(T0)
    for n in nodes:
        await n.drain()

    assert action.calls == 1
    assert len(events.of(SKIPPED, "restart")) == 2


@pytest.mark.asyncio
async def test_run_forever_stops_and_closes_leases():
    action = Counter()
    client = AsyncInMemoryRedis()
    node = Coordinator(Schedule([TaskSpec("t", Every(60), action, deadline=5)]),
                       RedisLeaseProvider(client), RecordingEventSink(), node_id="n1",
                       clock=lambda: T0 + timedelta(seconds=1))

    runner = asyncio.create_task(node.run_forever(poll_interval=0.01))
    await asyncio.sleep(0.1)
    node.stop()
    await asyncio.wait_for(runner, timeout=2)

    assert action.calls == 1
    assert client.closed


def test_partial_lease_provider_and_sink_cannot_be_built():
    class NoAcquire(LeaseProvider):
        async def close(self):
            pass

    class OnlySuccess(EventSink):
        def on_success(self, task_name, meta):
            pass

    with pytest.raises(TypeError):
        NoAcquire()
    with pytest.raises(TypeError):
        OnlySuccess()
