"""Shared claim-and-run contract for handlers of job-row kinds."""

from __future__ import annotations

import logging
from typing import ClassVar

from app.events.publisher import EventPublisher, publish_job_event
from app.jobs.errors import TerminalJobError, require_payload_str
from app.jobs.models import JobKind, JobRecord
from app.queue.models import QueueMessage
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class JobHandlerBase:
  """Re-reads the job row and decides whether this delivery owns it before executing."""

  kind: ClassVar[JobKind]

  def __init__(self, *, jobs_repo: JobsRepository, publisher: EventPublisher) -> None:
    self._jobs_repo = jobs_repo
    self._publisher = publisher

  async def run(self, message: QueueMessage) -> None:
    job_id = require_payload_str(message.payload, "job_id")
    job = await self._jobs_repo.get_job(job_id)
    if job is None:
      raise TerminalJobError(f"job {job_id} not found")
    if job.job_kind != self.kind:
      raise TerminalJobError(f"job {job_id} is {job.job_kind.value}, not {self.kind.value}")

    if job.is_terminal:
      logger.info("Job %s already %s; duplicate delivery ignored", job_id, job.status)
      await self.resume(job)
      return

    if job.is_parent:
      logger.info("Job %s is a parent and is finalized by its children", job_id)
      return

    if job.status == "queued":
      claimed = await self._jobs_repo.claim_job(job_id)
      if claimed is None:
        logger.info("Job %s claimed elsewhere", job_id)
        return
      job = claimed
      await publish_job_event(self._publisher, job, "progress", message="Started")
    elif message.attempt == 0:
      # Running on a first delivery means another worker is executing it.
      logger.info("Job %s already running elsewhere", job_id)
      return

    await self.execute(job)

  async def execute(self, job: JobRecord) -> None:
    """Perform the work for a running job and persist its result."""
    raise NotImplementedError

  async def resume(self, job: JobRecord) -> None:
    """Hook for redelivery of a finished job; follow-up steps must be idempotent."""
    return None


class ParentJobHandler(JobHandlerBase):
  """Parents are never executed; a stray delivery is acknowledged and dropped."""

  kind = JobKind.FULL_COURSE

  async def execute(self, job: JobRecord) -> None:
    return None
