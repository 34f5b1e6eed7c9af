"""Handler registry and the queue outcome mapping applied to every delivered message."""

from __future__ import annotations

import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from app.core.logging import job_log_context
from app.events.publisher import EventPublisher, publish_job_event
from app.jobs.coordinator import FanOutCoordinator
from app.jobs.errors import classify_failure
from app.jobs.models import JOB_ROW_KINDS, JobKind, JobRecord
from app.queue.interface import QueueClient
from app.queue.models import QueueMessage, build_message, retry_delay_seconds
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

MessageOutcome = Literal["acked", "retried", "dead_lettered"]
FailureDecision = Literal["retry", "give_up", "untracked"]


class JobHandler(Protocol):
  """Executes one delivered message of a single kind."""

  async def run(self, message: QueueMessage) -> None:
    """Run the message; raising signals failure to the dispatcher."""


class JobHandlerRegistry:
  """Registry mapping every job kind to its handler."""

  def __init__(self, handlers: dict[JobKind, JobHandler]) -> None:
    missing = sorted(kind.value for kind in JobKind if kind not in handlers)
    if missing:
      raise ValueError(f"No handler registered for job kinds: {', '.join(missing)}")
    self._handlers = dict(handlers)

  def resolve(self, kind: JobKind) -> JobHandler:
    return self._handlers[kind]


@dataclass(frozen=True)
class RetryPolicy:
  base_seconds: float
  max_seconds: float

  def delay(self, attempt: int, rng: random.Random | None = None) -> float:
    return retry_delay_seconds(attempt, base_seconds=self.base_seconds, max_seconds=self.max_seconds, rng=rng)


class JobFailureRecorder:
  """Persists a handler failure on the job row and fans failed children back in."""

  def __init__(self, *, jobs_repo: JobsRepository, coordinator: FanOutCoordinator, publisher: EventPublisher) -> None:
    self._jobs_repo = jobs_repo
    self._coordinator = coordinator
    self._publisher = publisher

  async def record(self, job_id: str, exc: BaseException) -> FailureDecision:
    """Return whether the job should be redelivered.

    "untracked" means the row was already terminal (or is gone), so the caller falls back to
    the message's own delivery ceiling.
    """
    error = _error_text(exc)
    if classify_failure(exc) == "terminal":
      await self.fail(job_id, error)
      return "give_up"

    updated = await self._jobs_repo.record_retry(job_id, error)
    if updated is None:
      return "untracked"
    if updated.retry_count < updated.max_retries:
      logger.warning("Job %s failed (retry %d/%d): %s", job_id, updated.retry_count, updated.max_retries, error)
      return "retry"

    await self.fail(job_id, f"retries exhausted: {error}")
    return "give_up"

  async def fail(self, job_id: str, error: str) -> JobRecord | None:
    failed = await self._jobs_repo.fail_job(job_id, error)
    if failed is None:
      return None
    logger.error("Job %s failed: %s", job_id, error)
    await publish_job_event(self._publisher, failed, "failed")
    await self._coordinator.on_child_terminal(failed)
    return failed


class JobDispatcher:
  """Runs messages through the registry and applies the queue outcome mapping."""

  def __init__(self, *, registry: JobHandlerRegistry, queue: QueueClient, recorder: JobFailureRecorder, retry_policy: RetryPolicy, rng: random.Random | None = None) -> None:
    self._registry = registry
    self._queue = queue
    self._recorder = recorder
    self._retry_policy = retry_policy
    self._rng = rng

  async def run_message(self, message: QueueMessage) -> MessageOutcome:
    with job_log_context(message_log_ref(message)):
      try:
        kind = message.job_kind
      except ValueError:
        await self._queue.dead_letter(message, error=f"unknown job kind {message.kind}")
        return "dead_lettered"

      try:
        await self._registry.resolve(kind).run(message)
      except Exception as exc:  # noqa: BLE001
        return await self._on_failure(kind, message, exc)

      await self._queue.ack(message)
      return "acked"

  async def _on_failure(self, kind: JobKind, message: QueueMessage, exc: Exception) -> MessageOutcome:
    error = _error_text(exc)
    terminal = classify_failure(exc) == "terminal"
    job_id = message.payload.get("job_id")
    if terminal:
      logger.error("Message %s kind=%s failed terminally: %s", message.id, message.kind, error)
    else:
      logger.warning("Message %s kind=%s attempt=%d failed: %s", message.id, message.kind, message.attempt, error, exc_info=exc)

    if kind in JOB_ROW_KINDS and isinstance(job_id, str) and job_id:
      try:
        decision = await self._recorder.record(job_id, exc)
      except Exception:  # noqa: BLE001
        logger.error("Recording failure for job %s failed; falling back to message retries", job_id, exc_info=True)
        decision = "untracked"
      if decision == "retry":
        return await self._retry(message, error)
      if decision == "give_up":
        await self._queue.dead_letter(message, error=error)
        return "dead_lettered"

    if terminal or message.attempt + 1 >= message.max_retry:
      await self._queue.dead_letter(message, error=error)
      return "dead_lettered"
    return await self._retry(message, error)

  async def _retry(self, message: QueueMessage, error: str) -> MessageOutcome:
    await self._queue.retry(message, error=error, delay_seconds=self._retry_policy.delay(message.attempt, self._rng))
    return "retried"


def _error_text(exc: BaseException) -> str:
  text = str(exc).strip()
  return text or exc.__class__.__name__


def message_log_ref(message: QueueMessage) -> str:
  """Short tag for log lines: kind plus the job, signup or message it concerns."""
  subject = message.payload.get("job_id") or message.payload.get("checkout_session_id") or message.id
  return f"{message.kind}:{subject}#{message.attempt}"


async def redeliver(queue: QueueClient, kind: JobKind, payload: dict[str, Any], *, error: str, delay_seconds: float = 0) -> QueueMessage:
  """Send a message as a retry (attempt > 0) for work that was interrupted outside the queue path.

  Handlers treat a retry as permission to take over a row a previous attempt left mid-flight.
  """
  message = build_message(kind, payload, message_id=uuid.uuid4().hex, now=time.time())
  return await queue.retry(message, error=error, delay_seconds=delay_seconds)


async def redeliver_job(queue: QueueClient, job: JobRecord, *, error: str, retry_policy: RetryPolicy, rng: random.Random | None = None) -> QueueMessage:
  """Schedule a redelivery for a job that failed outside the queue path; the row stays running."""
  return await redeliver(queue, job.job_kind, {"job_id": job.job_id}, error=error, delay_seconds=retry_policy.delay(job.retry_count, rng))
