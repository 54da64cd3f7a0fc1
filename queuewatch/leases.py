"""
Cluster-wide exclusivity for scheduled ticks.

A lease is keyed by task name + tick and lives for a TTL. Whoever sets the key
first runs the tick; everybody else sees the key and skips. Leases are never
released early: a crashed holder simply lets the key expire, and the next tick
uses a new key anyway.
"""
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Tuple

import redis.asyncio as redis

LEASE_PREFIX = "queuewatch:lease:"


class LeaseProvider(ABC):
    @abstractmethod
    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        """Return True if `owner` now holds `key` for `ttl` seconds."""

    async def close(self):
        pass


class InMemoryLeaseProvider(LeaseProvider):
    """Process-local leases; shared by coordinators living in one process."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        now = self._clock()
        with self._lock:
            held = self._leases.get(key)
            if held is not None and held[1] > now:
                return False
            self._leases[key] = (owner, now + ttl)
            return True

    def holder(self, key: str):
        held = self._leases.get(key)
        if held is None or held[1] <= self._clock():
            return None
        return held[0]


class RedisLeaseProvider(LeaseProvider):
    """SET key owner NX PX ttl: atomic on the redis server, so one winner per key."""

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisLeaseProvider":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    async def acquire(self, key: str, owner: str, ttl: float) -> bool:
        ok = await self.client.set(LEASE_PREFIX + key, owner, nx=True, px=max(1, int(ttl * 1000)))
        return bool(ok)

    async def close(self):
        await self.client.aclose()
