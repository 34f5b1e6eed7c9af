"""Scheduled system tasks: the DB poll fallback, expired signup cleanup and reconciliation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime

from app.jobs.dispatch import FailureDecision, JobFailureRecorder, RetryPolicy, redeliver_job
from app.jobs.handlers.base import JobHandlerBase
from app.jobs.models import JobKind
from app.jobs.reconciler import ProvisioningReconciler
from app.queue.interface import QueueClient
from app.queue.models import QueueMessage
from app.storage.jobs_repo import JobsRepository
from app.storage.provisioning_repo import ProvisioningRepository

logger = logging.getLogger(__name__)


class QueuedPollHandler:
  """Claims queued rows straight from the database and runs them inline.

  Covers messages lost between the insert and the queue, or dropped by a crashed consumer.
  """

  kind = JobKind.QUEUED_POLL

  def __init__(self, *, jobs_repo: JobsRepository, handlers: Mapping[JobKind, JobHandlerBase], recorder: JobFailureRecorder, queue: QueueClient, retry_policy: RetryPolicy, batch_size: int) -> None:
    self._jobs_repo = jobs_repo
    self._handlers = handlers
    self._recorder = recorder
    self._queue = queue
    self._retry_policy = retry_policy
    self._batch_size = batch_size

  async def run(self, message: QueueMessage) -> None:
    processed = 0
    for _ in range(self._batch_size):
      job = await self._jobs_repo.next_queued()
      if job is None:
        break
      processed += 1
      handler = self._handlers.get(job.job_kind)
      if handler is None:
        await self._recorder.fail(job.job_id, f"no handler for {job.job_kind.value}")
        continue
      try:
        await handler.execute(job)
      except Exception as exc:  # noqa: BLE001
        logger.warning("Polled job %s failed: %s", job.job_id, exc, exc_info=True)
        decision: FailureDecision = await self._recorder.record(job.job_id, exc)
        if decision == "retry":
          refreshed = await self._jobs_repo.get_job(job.job_id) or job
          await redeliver_job(self._queue, refreshed, error=str(exc), retry_policy=self._retry_policy)
    if processed:
      logger.info("Queued poll ran %d job(s) from the database", processed)


class ExpiredCleanupHandler:
  kind = JobKind.EXPIRED_CLEANUP

  def __init__(self, *, provisioning_repo: ProvisioningRepository, clock: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
    self._provisioning_repo = provisioning_repo
    self._clock = clock

  async def run(self, message: QueueMessage) -> None:
    deleted = await self._provisioning_repo.delete_expired(now=self._clock())
    logger.info("Expired cleanup removed %d unpaid signup(s)", deleted)


class ProvisioningReconcileHandler:
  kind = JobKind.PROVISIONING_RECONCILE

  def __init__(self, *, reconciler: ProvisioningReconciler) -> None:
    self._reconciler = reconciler

  async def run(self, message: QueueMessage) -> None:
    await self._reconciler.reconcile()
