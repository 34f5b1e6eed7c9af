"""Redis pub/sub transport for job events (one channel per recipient)."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import msgspec
from redis.asyncio import Redis

from app.events.publisher import EventPublisher, JobEvent, user_channel

logger = logging.getLogger(__name__)


class RedisEventPublisher(EventPublisher):
  """Publishes JSON events on events:user:<id> channels."""

  def __init__(self, redis: Redis) -> None:
    self._redis = redis

  async def publish(self, user_id: str, event: JobEvent) -> None:
    try:
      receivers = await self._redis.publish(user_channel(user_id), msgspec.json.encode(event))
      logger.debug("Published %s for job %s to %s subscriber(s)", event.event_type, event.job_id, receivers)
    except Exception as exc:  # noqa: BLE001
      logger.error("Redis publish failed channel=%s error=%s", user_channel(user_id), exc, exc_info=True)

  async def subscribe(self, user_id: str) -> AsyncIterator[JobEvent]:
    pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
    await pubsub.subscribe(user_channel(user_id))
    try:
      async for raw in pubsub.listen():
        if raw.get("type") != "message":
          continue
        try:
          yield msgspec.json.decode(raw["data"], type=JobEvent)
        except msgspec.DecodeError:
          logger.warning("Skipping malformed event on %s", user_channel(user_id))
    finally:
      await pubsub.unsubscribe(user_channel(user_id))
      await pubsub.aclose()
