"""Redis client construction.

One client per process, built by the runtime and injected into the queue, the scheduler locks
and the event publisher. Returns None when Redis is not configured (memory queue provider).
"""

from __future__ import annotations

from redis.asyncio import Redis

from app.config import Settings


def build_redis_client(settings: Settings) -> Redis | None:
  if not settings.redis_url:
    return None
  # decode_responses=False keeps queue payloads binary-safe; callers decode explicitly.
  return Redis.from_url(settings.redis_url, decode_responses=False, socket_timeout=5, socket_connect_timeout=2, health_check_interval=30)
