"""Job lifecycle events fanned out to live clients."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Literal, Protocol

import msgspec

from app.jobs.models import JobRecord

logger = logging.getLogger(__name__)

EventType = Literal["created", "progress", "completed", "failed"]


class JobEvent(msgspec.Struct, frozen=True):
  """Payload delivered on a recipient's channel."""

  event_type: str
  job_id: str
  job_kind: str
  status: str
  progress: int
  occurred_at: str
  message: str | None = None


def user_channel(user_id: str) -> str:
  return f"events:user:{user_id}"


def build_job_event(job: JobRecord, event_type: EventType, *, message: str | None = None) -> JobEvent:
  return JobEvent(
    event_type=event_type,
    job_id=job.job_id,
    job_kind=job.job_kind.value,
    status=job.status,
    progress=job.progress,
    occurred_at=datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
    message=message if message is not None else (job.error_message if event_type == "failed" else job.progress_message),
  )


class EventPublisher(Protocol):
  """Fire-and-forget publish plus per-recipient streaming subscription."""

  async def publish(self, user_id: str, event: JobEvent) -> None:
    """Deliver an event to every live subscriber of user_id."""
    ...

  def subscribe(self, user_id: str) -> AsyncIterator[JobEvent]:
    """Stream events for user_id until the consumer stops iterating."""
    ...


class NullEventPublisher(EventPublisher):
  """No-op publisher used when no pub/sub transport is configured."""

  async def publish(self, user_id: str, event: JobEvent) -> None:
    logger.debug("Event publishing disabled; dropping %s for job %s", event.event_type, event.job_id)

  async def subscribe(self, user_id: str) -> AsyncIterator[JobEvent]:
    return
    yield  # pragma: no cover


async def publish_job_event(publisher: EventPublisher, job: JobRecord, event_type: EventType, *, message: str | None = None) -> None:
  """Publish a lifecycle event; failures are logged and never raised."""
  if not job.user_id:
    return
  try:
    await publisher.publish(job.user_id, build_job_event(job, event_type, message=message))
  except Exception as exc:  # noqa: BLE001
    logger.error("Event publish failed job_id=%s event=%s error=%s", job.job_id, event_type, exc, exc_info=True)
