"""Bounded consumer pool that pulls messages from the queue and dispatches them."""

from __future__ import annotations

import asyncio
import logging
import os
import socket

from app.jobs.dispatch import JobDispatcher
from app.queue.interface import QueueClient
from app.queue.models import QueueMessage

logger = logging.getLogger(__name__)


class WorkerLoop:
  """Runs at most `concurrency` handlers at once; every message ends acked, retried or dead-lettered."""

  def __init__(self, *, queue: QueueClient, dispatcher: JobDispatcher, concurrency: int, dequeue_timeout_seconds: float = 1.0, drain_timeout_seconds: float = 30.0) -> None:
    if concurrency < 1:
      raise ValueError("Worker concurrency must be at least 1")
    self._queue = queue
    self._dispatcher = dispatcher
    self._concurrency = concurrency
    self._dequeue_timeout_seconds = dequeue_timeout_seconds
    self._drain_timeout_seconds = drain_timeout_seconds
    self._semaphore = asyncio.Semaphore(concurrency)
    self._active: set[asyncio.Task[None]] = set()
    self._stop_event = asyncio.Event()
    self._main_task: asyncio.Task[None] | None = None
    self.worker_id = f"{socket.gethostname()}-{os.getpid()}"

  @property
  def active_count(self) -> int:
    return len(self._active)

  def start(self) -> None:
    if self._main_task is not None:
      raise RuntimeError("Worker is already running")
    self._stop_event.clear()
    self._main_task = asyncio.create_task(self.run(), name="authorly-worker")

  async def stop(self) -> None:
    """Stop taking new messages and give in-flight handlers time to finish."""
    self._stop_event.set()
    if self._main_task is not None:
      await self._main_task
      self._main_task = None
    if not self._active:
      return
    _, pending = await asyncio.wait(set(self._active), timeout=self._drain_timeout_seconds)
    if pending:
      # Unfinished messages stay in flight; the queue redelivers them after restart.
      logger.warning("Worker stopped with %d active handler(s); cancelling", len(pending))
      for task in pending:
        task.cancel()
      await asyncio.gather(*pending, return_exceptions=True)

  async def run(self) -> None:
    logger.info("Worker %s started with concurrency=%d", self.worker_id, self._concurrency)
    while await self._acquire_slot():
      try:
        message = await self._queue.dequeue(self._dequeue_timeout_seconds)
      except Exception:  # noqa: BLE001
        self._semaphore.release()
        logger.error("Dequeue failed; backing off", exc_info=True)
        await self._sleep(min(5.0, self._dequeue_timeout_seconds * 5))
        continue
      if message is None:
        self._semaphore.release()
        continue
      task = asyncio.create_task(self._process(message), name=f"authorly-job-{message.id}")
      self._active.add(task)
      task.add_done_callback(self._active.discard)
    logger.info("Worker %s stopped taking messages", self.worker_id)

  async def run_once(self, timeout: float = 0.0) -> QueueMessage | None:
    """Dequeue and fully process a single message; returns it, or None when the queue was empty."""
    message = await self._queue.dequeue(timeout)
    if message is None:
      return None
    await self._dispatcher.run_message(message)
    return message

  async def _process(self, message: QueueMessage) -> None:
    try:
      outcome = await self._dispatcher.run_message(message)
      logger.debug("Message %s kind=%s %s", message.id, message.kind, outcome)
    except Exception:  # noqa: BLE001
      # Queue bookkeeping itself failed; the message stays in flight for redelivery.
      logger.error("Dispatch of message %s kind=%s failed", message.id, message.kind, exc_info=True)
    finally:
      self._semaphore.release()

  async def _acquire_slot(self) -> bool:
    """Wait for a free handler slot; False once the worker is stopping."""
    while not self._stop_event.is_set():
      try:
        await asyncio.wait_for(self._semaphore.acquire(), timeout=0.5)
      except TimeoutError:
        continue
      if self._stop_event.is_set():
        self._semaphore.release()
        return False
      return True
    return False

  async def _sleep(self, seconds: float) -> None:
    try:
      await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
    except TimeoutError:
      pass
