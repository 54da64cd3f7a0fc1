"""
Periodic task coordinator.

Each node runs one Coordinator. On every poll it works out, for each task in
its Schedule, the most recent scheduled tick; a tick that has not been handled
yet is dispatched once:

* overlap guard: if this node is still running the previous tick of the same
  task, the new tick is skipped;
* cluster exclusivity: exclusive tasks must win a lease keyed by task + tick,
  so exactly one node of the fleet runs the tick;
* the task body runs in a worker thread under a deadline, so a slow task never
  blocks the dispatch of other tasks.
"""
import asyncio
import logging
import platform
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .events import EventSink, RAN, SKIPPED, FAILED
from .leases import LeaseProvider
from .utils import to_iso, utcnow

logger = logging.getLogger(__name__)

OVERLAP = "overlap"
LEASE_HELD = "lease-held"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Every:
    """Fixed interval aligned to the epoch, so every node agrees on tick instants."""

    def __init__(self, seconds: int):
        if seconds <= 0:
            raise ValueError("interval must be > 0 seconds")
        self.seconds = int(seconds)

    def last_tick(self, now: datetime) -> datetime:
        elapsed = int((now - EPOCH).total_seconds())
        return EPOCH + timedelta(seconds=elapsed - elapsed % self.seconds)

    def __repr__(self):
        return f"Every({self.seconds}s)"


class DailyAt:
    def __init__(self, hour: int, minute: int = 0):
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"invalid time of day {hour:02d}:{minute:02d}")
        self.hour, self.minute = hour, minute

    def last_tick(self, now: datetime) -> datetime:
        now = now.astimezone(timezone.utc)
        tick = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if tick > now:
            tick -= timedelta(days=1)
        return tick

    def __repr__(self):
        return f"DailyAt({self.hour:02d}:{self.minute:02d} UTC)"


EVERY_MINUTE = Every(60)
EVERY_FIVE_MINUTES = Every(300)
HOURLY = Every(3600)


@dataclass(frozen=True)
class TaskSpec:
    name: str
    cadence: Any
    action: Callable[[], Any]
    exclusive: bool = True
    deadline: float = 300.0
    lease_margin: float = 30.0

    @property
    def lease_ttl(self) -> float:
        return self.deadline + self.lease_margin


class Schedule:
    def __init__(self, tasks: Iterable[TaskSpec]):
        self.tasks = tuple(tasks)
        names = [t.name for t in self.tasks]
        dupes = {n for n in names if names.count(n) > 1}
        if dupes:
            raise ValueError(f"duplicate task names: {', '.join(sorted(dupes))}")

    def __iter__(self):
        return iter(self.tasks)

    def __len__(self):
        return len(self.tasks)

    def get(self, name: str) -> TaskSpec:
        for t in self.tasks:
            if t.name == name:
                return t
        raise KeyError(name)


@dataclass
class Dispatch:
    task: str
    tick: datetime
    decision: str
    reason: Optional[str] = None


def lease_key(spec: TaskSpec, tick: datetime) -> str:
    return f"{spec.name}:{to_iso(tick)}"


class Coordinator:
    def __init__(self, schedule: Schedule, leases: LeaseProvider, events: EventSink,
                 node_id: Optional[str] = None, clock: Callable[[], datetime] = utcnow,
                 misfire_grace: float = 60.0):
        self.schedule = schedule
        self.leases = leases
        self.events = events
        self.node_id = node_id or f"{platform.node()}-{uuid.uuid4().hex[:8]}"
        self.clock = clock
        self.misfire_grace = misfire_grace
        self._last_tick: Dict[str, datetime] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()

    def running(self) -> List[str]:
        return sorted(self._running)

    async def dispatch_due(self, now: Optional[datetime] = None) -> List[Dispatch]:
        now = now or self.clock()
        out = []
        for spec in self.schedule:
            tick = spec.cadence.last_tick(now)
            if self._last_tick.get(spec.name) == tick:
                continue
            if (now - tick).total_seconds() > self.misfire_grace:
                # missed while down; wait for the next tick instead of catching up
                continue
            self._last_tick[spec.name] = tick
            out.append(await self._dispatch(spec, tick))
        return out

    async def _dispatch(self, spec: TaskSpec, tick: datetime) -> Dispatch:
        meta = {"tick": to_iso(tick), "node": self.node_id}
        if spec.name in self._running:
            self.events.on_skipped(spec.name, OVERLAP, meta)
            return Dispatch(spec.name, tick, SKIPPED, OVERLAP)

        if spec.exclusive:
            try:
                won = await self.leases.acquire(lease_key(spec, tick), self.node_id, spec.lease_ttl)
            except Exception as e:
                # without a lease we cannot know nobody else runs it
                logger.error("Lease check for %s failed: %s", spec.name, e)
                self.events.on_failure(spec.name, e, meta)
                return Dispatch(spec.name, tick, FAILED, "lease-error")
            if not won:
                self.events.on_skipped(spec.name, LEASE_HELD, meta)
                return Dispatch(spec.name, tick, SKIPPED, LEASE_HELD)

        task = asyncio.create_task(self._execute(spec, meta), name=f"queuewatch:{spec.name}")
        self._running[spec.name] = task
        task.add_done_callback(lambda _t, name=spec.name: self._running.pop(name, None))
        logger.debug("Dispatched %s for tick %s", spec.name, meta["tick"])
        return Dispatch(spec.name, tick, RAN)

    async def _execute(self, spec: TaskSpec, meta: Dict[str, Any]):
        start = time.monotonic()
        work = asyncio.ensure_future(asyncio.to_thread(spec.action))
        try:
            result = await asyncio.wait_for(asyncio.shield(work), timeout=spec.deadline)
        except asyncio.TimeoutError:
            self.events.on_failure(
                spec.name, TimeoutError(f"{spec.name} exceeded its {spec.deadline}s deadline"), meta
            )
            # the thread cannot be interrupted; hold the overlap guard until it returns
            try:
                await work
            except Exception as e:
                logger.warning("Task %s finished late with error: %s", spec.name, e)
            else:
                logger.warning("Task %s finished late after %.1fs", spec.name, time.monotonic() - start)
            return
        except Exception as e:
            logger.debug("Task %s raised", spec.name, exc_info=True)
            self.events.on_failure(spec.name, e, meta)
            return

        meta = dict(meta, elapsed=time.monotonic() - start)
        if result is not None:
            meta["result"] = result
        self.events.on_success(spec.name, meta)

    async def drain(self):
        """Wait for every in-flight task run on this node."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    def stop(self):
        self._stopping.set()

    async def run_forever(self, poll_interval: float = 1.0):
        logger.info(
            "Coordinator %s starting with %d task(s): %s",
            self.node_id, len(self.schedule), ", ".join(t.name for t in self.schedule),
        )
        try:
            while not self._stopping.is_set():
                await self.dispatch_due()
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.drain()
            await self.leases.close()
            logger.info("Coordinator %s stopped", self.node_id)
