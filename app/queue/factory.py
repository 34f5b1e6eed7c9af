from __future__ import annotations

from redis.asyncio import Redis

from app.config import Settings
from app.queue.interface import QueueClient
from app.queue.memory import InMemoryQueueClient
from app.queue.redis_queue import RedisQueueClient


def get_queue_client(settings: Settings, redis: Redis | None) -> QueueClient:
  """Factory to get the configured queue client."""
  if settings.queue_provider == "redis":
    if redis is None:
      raise RuntimeError("Redis client is required for the redis queue provider.")
    return RedisQueueClient(redis, heartbeat_ttl_seconds=settings.queue_heartbeat_ttl_seconds)
  return InMemoryQueueClient()
