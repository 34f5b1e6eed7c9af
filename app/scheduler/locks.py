"""Cluster-wide lock primitives for the periodic scheduler."""

from __future__ import annotations

import time
import uuid
from typing import Protocol

from redis.asyncio import Redis


class DistributedLock(Protocol):
  """A lease that at most one holder acquires per key until it expires."""

  async def acquire(self, key: str, ttl_seconds: float) -> bool:
    """Return True for exactly one caller per key while the lease lives."""
    ...


class RedisLock(DistributedLock):
  """SET NX PX lease; the first replica to write the key wins the slot."""

  def __init__(self, redis: Redis) -> None:
    self._redis = redis
    self._token = uuid.uuid4().hex

  async def acquire(self, key: str, ttl_seconds: float) -> bool:
    acquired = await self._redis.set(key, self._token, nx=True, px=max(1, int(ttl_seconds * 1000)))
    return bool(acquired)


class InMemoryLock(DistributedLock):
  """Lease table for a single process; share one instance between simulated replicas."""

  def __init__(self, clock=time.monotonic) -> None:  # type: ignore[no-untyped-def]
    self._clock = clock
    self._leases: dict[str, float] = {}

  async def acquire(self, key: str, ttl_seconds: float) -> bool:
    now = self._clock()
    expires_at = self._leases.get(key)
    if expires_at is not None and expires_at > now:
      return False
    self._leases[key] = now + ttl_seconds
    return True
