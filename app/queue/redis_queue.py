"""Redis-backed work queue with weighted priority lanes and delayed retries.

Layout under the key prefix:
  <prefix>:lane:<lane>     LIST of encoded messages, pushed left and consumed right (FIFO)
  <prefix>:active:<id>     LIST of messages consumer <id> is working on
  <prefix>:consumers       ZSET of consumer ids scored by their last heartbeat (epoch seconds)
  <prefix>:scheduled       ZSET of encoded messages scored by due epoch seconds
  <prefix>:dead            LIST of dead-lettered messages (capped)

A consumer whose heartbeat is older than the TTL is presumed dead; the next live consumer to
notice moves its active list back onto the lanes as a retry.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
import time
import uuid
from collections.abc import Callable
from typing import Any

import msgspec
from redis.asyncio import Redis

from app.jobs.models import JobKind
from app.queue.interface import QueueClient
from app.queue.models import LANE_WEIGHTS, QueueMessage, build_message, decode_message, encode_message, weighted_lane_order

logger = logging.getLogger(__name__)

_DEAD_LETTER_CAP = 1000
_PROMOTE_BATCH = 100
_RECOVER_BATCH = 20


def default_consumer_id() -> str:
  return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class RedisQueueClient(QueueClient):
  """Queue client over Redis lists; delivery is at-least-once."""

  def __init__(
    self,
    redis: Redis,
    *,
    key_prefix: str = "authorly:queue",
    poll_interval_seconds: float = 0.2,
    heartbeat_ttl_seconds: float = 30.0,
    consumer_id: str | None = None,
    rng: random.Random | None = None,
    clock: Callable[[], float] = time.time,
  ) -> None:
    self._redis = redis
    self._prefix = key_prefix
    self._poll_interval_seconds = poll_interval_seconds
    self._heartbeat_ttl_seconds = heartbeat_ttl_seconds
    self._rng = rng or random.Random()
    self._clock = clock
    self._consumer_id = consumer_id or default_consumer_id()
    # Raw bytes of in-flight messages so ack can LREM the exact element.
    self._inflight: dict[str, bytes] = {}
    self._heartbeat_task: asyncio.Task[None] | None = None
    self._next_recovery_at = 0.0

  @property
  def consumer_id(self) -> str:
    return self._consumer_id

  def _lane_key(self, lane: str) -> str:
    return f"{self._prefix}:lane:{lane}"

  def _active_key_for(self, consumer_id: str) -> str:
    return f"{self._prefix}:active:{consumer_id}"

  @property
  def _active_key(self) -> str:
    return self._active_key_for(self._consumer_id)

  @property
  def _consumers_key(self) -> str:
    return f"{self._prefix}:consumers"

  @property
  def _scheduled_key(self) -> str:
    return f"{self._prefix}:scheduled"

  @property
  def _dead_key(self) -> str:
    return f"{self._prefix}:dead"

  async def enqueue(self, kind: JobKind, payload: dict[str, Any], *, delay_seconds: float = 0) -> QueueMessage:
    message = build_message(kind, payload, message_id=uuid.uuid4().hex, now=self._clock())
    await self._push(message, delay_seconds=delay_seconds)
    logger.info("Enqueued %s message_id=%s lane=%s", message.kind, message.id, message.lane)
    return message

  async def dequeue(self, timeout: float) -> QueueMessage | None:
    await self._ensure_heartbeat()
    deadline = time.monotonic() + timeout
    while True:
      if self._clock() >= self._next_recovery_at:
        self._next_recovery_at = self._clock() + self._heartbeat_ttl_seconds / 3
        await self.recover_orphans()
      await self._promote_due()
      for lane in weighted_lane_order(self._rng):
        raw = await self._redis.lmove(self._lane_key(lane), self._active_key, "RIGHT", "LEFT")
        if raw is None:
          continue
        try:
          message = decode_message(raw)
        except msgspec.DecodeError:
          logger.error("Dropping undecodable queue entry from lane=%s", lane, exc_info=True)
          await self._redis.lrem(self._active_key, 1, raw)
          await self._park_raw(raw)
          continue
        self._inflight[message.id] = raw
        return message

      if time.monotonic() >= deadline:
        return None
      await asyncio.sleep(self._poll_interval_seconds)

  async def ack(self, message: QueueMessage) -> None:
    raw = self._inflight.pop(message.id, None)
    if raw is not None:
      await self._redis.lrem(self._active_key, 1, raw)

  async def retry(self, message: QueueMessage, *, error: str, delay_seconds: float) -> QueueMessage:
    retried = msgspec.structs.replace(message, attempt=message.attempt + 1, last_error=error[:500])
    await self._push(retried, delay_seconds=delay_seconds)
    await self.ack(message)
    logger.info("Scheduled retry %s message_id=%s attempt=%s in %.1fs", message.kind, message.id, retried.attempt, delay_seconds)
    return retried

  async def dead_letter(self, message: QueueMessage, *, error: str) -> None:
    parked = msgspec.structs.replace(message, last_error=error[:500])
    await self._park_raw(encode_message(parked))
    await self.ack(message)
    logger.warning("Dead-lettered %s message_id=%s attempt=%s error=%s", message.kind, message.id, message.attempt, error)

  async def depths(self) -> dict[str, int]:
    depths = {lane: int(await self._redis.llen(self._lane_key(lane))) for lane in LANE_WEIGHTS}
    depths["scheduled"] = int(await self._redis.zcard(self._scheduled_key))
    return depths

  async def recover_orphans(self) -> int:
    """Redeliver the in-flight messages of consumers whose heartbeat expired.

    ZREM on the consumer entry decides which replica recovers it. Entries travel through this
    consumer's own active list, so a crash halfway leaves them recoverable again.
    """
    cutoff = self._clock() - self._heartbeat_ttl_seconds
    stale = await self._redis.zrangebyscore(self._consumers_key, "-inf", cutoff, start=0, num=_RECOVER_BATCH)
    recovered = 0
    for raw_id in stale:
      consumer_id = raw_id.decode() if isinstance(raw_id, bytes) else str(raw_id)
      if consumer_id == self._consumer_id:
        continue
      if await self._redis.zrem(self._consumers_key, raw_id) != 1:
        continue
      recovered += await self._requeue_active(consumer_id)
    return recovered

  async def close(self) -> None:
    if self._heartbeat_task is not None:
      self._heartbeat_task.cancel()
      try:
        await self._heartbeat_task
      except asyncio.CancelledError:
        pass
      self._heartbeat_task = None
      # Anything still in flight becomes recoverable on the next sweep instead of after the TTL.
      try:
        await self._redis.zadd(self._consumers_key, {self._consumer_id: 0})
      except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to release consumer %s: %s", self._consumer_id, exc)
    await self._redis.aclose()

  async def _requeue_active(self, consumer_id: str) -> int:
    orphan_key = self._active_key_for(consumer_id)
    count = 0
    while True:
      raw = await self._redis.lmove(orphan_key, self._active_key, "RIGHT", "LEFT")
      if raw is None:
        break
      try:
        message = decode_message(raw)
      except msgspec.DecodeError:
        logger.error("Dropping undecodable entry from active list of %s", consumer_id, exc_info=True)
        await self._redis.lrem(self._active_key, 1, raw)
        await self._park_raw(raw)
        continue
      error = f"consumer {consumer_id} stopped heartbeating"
      if message.attempt + 1 >= message.max_retry:
        await self._park_raw(encode_message(msgspec.structs.replace(message, last_error=error)))
        logger.warning("Dead-lettered orphaned %s message_id=%s attempt=%s", message.kind, message.id, message.attempt)
      else:
        await self._push(msgspec.structs.replace(message, attempt=message.attempt + 1, last_error=error), delay_seconds=0)
        logger.warning("Redelivering orphaned %s message_id=%s from %s", message.kind, message.id, consumer_id)
      await self._redis.lrem(self._active_key, 1, raw)
      count += 1
    return count

  async def _ensure_heartbeat(self) -> None:
    if self._heartbeat_task is not None:
      return
    await self._beat()
    self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name=f"queue-heartbeat-{self._consumer_id}")

  async def _heartbeat_loop(self) -> None:
    # Runs independently of dequeue so long handlers keep their messages owned.
    while True:
      await asyncio.sleep(self._heartbeat_ttl_seconds / 3)
      try:
        await self._beat()
      except Exception as exc:  # noqa: BLE001
        logger.warning("Queue heartbeat for %s failed: %s", self._consumer_id, exc)

  async def _beat(self) -> None:
    await self._redis.zadd(self._consumers_key, {self._consumer_id: self._clock()})

  async def _push(self, message: QueueMessage, *, delay_seconds: float) -> None:
    raw = encode_message(message)
    if delay_seconds > 0:
      await self._redis.zadd(self._scheduled_key, {raw: self._clock() + delay_seconds})
      return
    await self._redis.lpush(self._lane_key(message.lane), raw)

  async def _promote_due(self) -> None:
    """Move due retries onto their lanes; ZREM decides which replica moves each one."""
    due = await self._redis.zrangebyscore(self._scheduled_key, "-inf", self._clock(), start=0, num=_PROMOTE_BATCH)
    for raw in due:
      if await self._redis.zrem(self._scheduled_key, raw) != 1:
        continue
      message = decode_message(raw)
      await self._redis.lpush(self._lane_key(message.lane), raw)

  async def _park_raw(self, raw: bytes) -> None:
    await self._redis.lpush(self._dead_key, raw)
    await self._redis.ltrim(self._dead_key, 0, _DEAD_LETTER_CAP - 1)
