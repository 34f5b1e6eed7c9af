"""Exactly-once periodic task trigger.

Every replica runs the same loop and asks the lock store for each task's current slot
(`floor(now / interval)`). Only the replica that wins the slot lease enqueues the task, so a
task fires once per interval cluster-wide regardless of how many replicas tick.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from app.config import Settings
from app.jobs.models import JobKind
from app.queue.interface import QueueClient
from app.scheduler.locks import DistributedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledTask:
  """A logical periodic task registration."""

  name: str
  kind: JobKind
  interval_seconds: int


def default_schedule(settings: Settings) -> list[ScheduledTask]:
  """Scheduled-task registrations consumed at startup."""
  return [
    ScheduledTask(name="queued-poll", kind=JobKind.QUEUED_POLL, interval_seconds=settings.poll_interval_seconds),
    ScheduledTask(name="provisioning-reconcile", kind=JobKind.PROVISIONING_RECONCILE, interval_seconds=settings.reconcile_interval_seconds),
    ScheduledTask(name="expired-cleanup", kind=JobKind.EXPIRED_CLEANUP, interval_seconds=settings.cleanup_interval_seconds),
  ]


class Scheduler:
  """Ticks registrations and enqueues each task once per interval slot."""

  def __init__(self, tasks: list[ScheduledTask], *, lock: DistributedLock, queue: QueueClient, tick_seconds: float = 1.0, key_prefix: str = "authorly:scheduler", clock: Callable[[], float] = time.time) -> None:
    names = [task.name for task in tasks]
    if len(names) != len(set(names)):
      raise ValueError("Scheduled task names must be unique")
    self._tasks = tasks
    self._lock = lock
    self._queue = queue
    self._tick_seconds = tick_seconds
    self._key_prefix = key_prefix
    self._clock = clock

  @property
  def tasks(self) -> list[ScheduledTask]:
    return list(self._tasks)

  async def tick(self, now: float | None = None) -> list[str]:
    """Fire every task whose current slot this replica wins; returns the fired names."""
    current = self._clock() if now is None else now
    fired: list[str] = []
    for task in self._tasks:
      slot = int(current // task.interval_seconds)
      key = f"{self._key_prefix}:{task.name}:{slot}"
      # Lease outlives the slot so a late replica cannot re-acquire it.
      if not await self._lock.acquire(key, ttl_seconds=task.interval_seconds * 2):
        continue
      await self._queue.enqueue(task.kind, {"scheduled_slot": slot})
      fired.append(task.name)
      logger.debug("Scheduled task %s fired for slot %s", task.name, slot)
    return fired

  async def run(self, stop_event: asyncio.Event) -> None:
    """Tick until stop_event is set; tick failures are logged and the loop continues."""
    logger.info("Scheduler started with tasks: %s", ", ".join(f"{task.name}/{task.interval_seconds}s" for task in self._tasks))
    while not stop_event.is_set():
      try:
        await self.tick()
      except Exception:  # noqa: BLE001
        logger.error("Scheduler tick failed", exc_info=True)
      try:
        await asyncio.wait_for(stop_event.wait(), timeout=self._tick_seconds)
      except TimeoutError:
        pass
    logger.info("Scheduler stopped.")
