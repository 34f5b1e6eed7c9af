"""In-process queue used for local single-replica runs and tests."""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from collections import deque
from typing import Any

import msgspec

from app.jobs.models import JobKind
from app.queue.interface import QueueClient
from app.queue.models import LANE_WEIGHTS, QueueMessage, build_message, weighted_lane_order

logger = logging.getLogger(__name__)


class InMemoryQueueClient(QueueClient):
  """Queue client backed by deques; survives nothing beyond the process."""

  def __init__(self, *, rng: random.Random | None = None) -> None:
    self._rng = rng or random.Random()
    self._lanes: dict[str, deque[QueueMessage]] = {lane: deque() for lane in LANE_WEIGHTS}
    self._scheduled: list[tuple[float, QueueMessage]] = []
    self._inflight: dict[str, QueueMessage] = {}
    self._wakeup = asyncio.Event()
    self.dead_letters: list[QueueMessage] = []

  async def enqueue(self, kind: JobKind, payload: dict[str, Any], *, delay_seconds: float = 0) -> QueueMessage:
    message = build_message(kind, payload, message_id=uuid.uuid4().hex, now=time.time())
    self._push(message, delay_seconds=delay_seconds)
    logger.debug("Enqueued %s message_id=%s lane=%s", message.kind, message.id, message.lane)
    return message

  async def dequeue(self, timeout: float) -> QueueMessage | None:
    deadline = time.monotonic() + timeout
    while True:
      self._promote_due()
      for lane in weighted_lane_order(self._rng):
        if self._lanes[lane]:
          message = self._lanes[lane].popleft()
          self._inflight[message.id] = message
          return message

      remaining = deadline - time.monotonic()
      if remaining <= 0:
        return None
      self._wakeup.clear()
      try:
        await asyncio.wait_for(self._wakeup.wait(), timeout=min(remaining, 0.05))
      except TimeoutError:
        pass

  async def ack(self, message: QueueMessage) -> None:
    self._inflight.pop(message.id, None)

  async def retry(self, message: QueueMessage, *, error: str, delay_seconds: float) -> QueueMessage:
    retried = msgspec.structs.replace(message, attempt=message.attempt + 1, last_error=error[:500])
    self._inflight.pop(message.id, None)
    self._push(retried, delay_seconds=delay_seconds)
    return retried

  async def dead_letter(self, message: QueueMessage, *, error: str) -> None:
    self._inflight.pop(message.id, None)
    self.dead_letters.append(msgspec.structs.replace(message, last_error=error[:500]))
    logger.warning("Dead-lettered %s message_id=%s error=%s", message.kind, message.id, error)

  async def depths(self) -> dict[str, int]:
    depths = {lane: len(items) for lane, items in self._lanes.items()}
    depths["scheduled"] = len(self._scheduled)
    return depths

  async def close(self) -> None:
    return None

  def pending(self) -> list[QueueMessage]:
    """Snapshot of messages waiting on any lane, scheduled retries included."""
    waiting = [message for lane in self._lanes.values() for message in lane]
    return waiting + [message for _, message in self._scheduled]

  def _push(self, message: QueueMessage, *, delay_seconds: float) -> None:
    if delay_seconds > 0:
      self._scheduled.append((time.monotonic() + delay_seconds, message))
    else:
      self._lanes[message.lane].append(message)
    self._wakeup.set()

  def _promote_due(self) -> None:
    now = time.monotonic()
    due = [entry for entry in self._scheduled if entry[0] <= now]
    if not due:
      return
    self._scheduled = [entry for entry in self._scheduled if entry[0] > now]
    for _, message in due:
      self._lanes[message.lane].append(message)
