"""Fan-out of a course outline into lesson jobs and the matching fan-in."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from app.events.publisher import EventPublisher, publish_job_event
from app.jobs.errors import TerminalJobError
from app.jobs.models import DEFAULT_MAX_RETRIES, FinalizationResult, JobKind, JobRecord
from app.notifications.service import NotificationService
from app.queue.interface import QueueClient
from app.services.contracts import ObjectStorage
from app.storage.jobs_repo import JobsRepository
from app.utils.db_retry import run_with_db_retry
from app.utils.ids import generate_job_id

logger = logging.getLogger(__name__)


def outline_lessons(outline: dict[str, Any]) -> list[tuple[int, int]]:
  """Return (section_index, lesson_index) for every lesson in a stored outline."""
  positions: list[tuple[int, int]] = []
  sections = outline.get("sections") or []
  if not isinstance(sections, list):
    raise TerminalJobError("outline sections must be a list")
  for section_index, section in enumerate(sections):
    lessons = section.get("lessons") if isinstance(section, dict) else None
    for lesson_index, _ in enumerate(lessons or []):
      positions.append((section_index, lesson_index))
  return positions


class FanOutCoordinator:
  """Creates a parent with one child per lesson and finalizes it once all children settle."""

  def __init__(self, *, jobs_repo: JobsRepository, queue: QueueClient, storage: ObjectStorage, publisher: EventPublisher, notifications: NotificationService) -> None:
    self._jobs_repo = jobs_repo
    self._queue = queue
    self._storage = storage
    self._publisher = publisher
    self._notifications = notifications

  async def fan_out_course(self, outline_job: JobRecord) -> JobRecord:
    """Create (or find) the course parent for a completed outline and enqueue its lessons.

    Safe to replay: the parent and every child carry deterministic idempotency keys, so a
    repeated call returns the existing rows instead of inserting duplicates.
    """
    if outline_job.job_kind != JobKind.COURSE_OUTLINE or outline_job.status != "completed" or not outline_job.result_path:
      raise TerminalJobError(f"job {outline_job.job_id} is not a completed outline")

    outline = await self._storage.read_json(outline_job.result_path)
    positions = outline_lessons(outline)

    parent = JobRecord(
      job_id=generate_job_id(),
      tenant_id=outline_job.tenant_id,
      user_id=outline_job.user_id,
      job_kind=JobKind.FULL_COURSE,
      status="running",
      request={"outline_job_id": outline_job.job_id},
      progress=10,
      progress_message=f"Generated 0 of {len(positions)} lessons...",
      expected_children=len(positions),
      max_retries=DEFAULT_MAX_RETRIES[JobKind.FULL_COURSE],
      idempotency_key=f"full_course:{outline_job.job_id}",
      started_at=datetime.now(UTC),
    )
    parent_id = await self._jobs_repo.create_job(parent)

    for section_index, lesson_index in positions:
      child = JobRecord(
        job_id=generate_job_id(),
        tenant_id=outline_job.tenant_id,
        user_id=outline_job.user_id,
        job_kind=JobKind.LESSON_CONTENT,
        status="queued",
        request={"outline_job_id": outline_job.job_id, "section_index": section_index, "lesson_index": lesson_index},
        parent_job_id=parent_id,
        max_retries=DEFAULT_MAX_RETRIES[JobKind.LESSON_CONTENT],
        idempotency_key=f"{parent_id}:lesson:{section_index}:{lesson_index}",
      )
      await self._jobs_repo.create_job(child)

    children = await self._jobs_repo.list_by_parent(parent_id)
    for child in children:
      # Children already picked up (or finished) on a previous pass are left alone.
      if child.status == "queued":
        await self._queue.enqueue(JobKind.LESSON_CONTENT, {"job_id": child.job_id})

    stored_parent = await self._jobs_repo.get_job(parent_id)
    if stored_parent is None:
      raise LookupError(f"parent job {parent_id} vanished after creation")
    logger.info("Fanned out outline %s into parent %s with %d lessons", outline_job.job_id, parent_id, len(children))
    await publish_job_event(self._publisher, stored_parent, "created")

    if not children:
      await self._finalize(parent_id)
      stored_parent = await self._jobs_repo.get_job(parent_id) or stored_parent
    return stored_parent

  async def on_child_terminal(self, child: JobRecord) -> FinalizationResult | None:
    """Fan a settled child back into its parent; only the finalizing call notifies."""
    if not child.parent_job_id:
      return None
    return await self._finalize(child.parent_job_id)

  async def _finalize(self, parent_job_id: str) -> FinalizationResult:
    result = await run_with_db_retry(lambda: self._jobs_repo.try_finalize_parent(parent_job_id), operation_name="try_finalize_parent")
    parent = await self._jobs_repo.get_job(parent_job_id)
    if parent is None:
      return result

    if not result.all_complete:
      await publish_job_event(self._publisher, parent, "progress")
      return result
    if not result.was_finalized:
      return result

    logger.info("Finalized parent %s status=%s completed=%d failed=%d tokens=%d", parent_job_id, result.parent_status, result.completed, result.failed, result.tokens_used)
    await publish_job_event(self._publisher, parent, "failed" if result.parent_status == "failed" else "completed")
    await self._notifications.notify_course_finished(parent, lesson_count=result.total)
    return result
