"""Course outline and lesson content generation handlers."""

from __future__ import annotations

import logging
from typing import Any

from app.events.publisher import EventPublisher, publish_job_event
from app.jobs.coordinator import FanOutCoordinator
from app.jobs.errors import TerminalJobError, require_payload_str
from app.jobs.handlers.base import JobHandlerBase
from app.jobs.models import JobKind, JobRecord
from app.notifications.service import NotificationService
from app.services.contracts import AIProvider, ObjectStorage, tenant_path
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

_BRIEF_FIELDS = ("course_id", "title", "audience", "lesson_count")


class CourseOutlineHandler(JobHandlerBase):
  kind = JobKind.COURSE_OUTLINE

  def __init__(self, *, jobs_repo: JobsRepository, publisher: EventPublisher, ai: AIProvider, storage: ObjectStorage, coordinator: FanOutCoordinator, notifications: NotificationService) -> None:
    super().__init__(jobs_repo=jobs_repo, publisher=publisher)
    self._ai = ai
    self._storage = storage
    self._coordinator = coordinator
    self._notifications = notifications

  async def execute(self, job: JobRecord) -> None:
    course_id = require_payload_str(job.request, "course_id")
    brief = {field: job.request.get(field) for field in _BRIEF_FIELDS if job.request.get(field) is not None}
    result = await self._ai.generate_outline(brief)

    path = tenant_path(job.tenant_id, "courses", course_id, "outline.json")
    await self._storage.write_json(path, {"course_id": course_id, "sections": result.sections})
    completed = await self._jobs_repo.complete_job(job.job_id, result_path=path, tokens_used=result.tokens_used, progress_message="Outline ready")
    if completed is None:
      logger.warning("Outline job %s left running state before completion", job.job_id)
      return

    logger.info("Outline job %s completed with %d sections", job.job_id, len(result.sections))
    await publish_job_event(self._publisher, completed, "completed")
    if completed.request.get("generate_lessons"):
      await self._coordinator.fan_out_course(completed)
    else:
      await self._notifications.notify_job_ready(completed)

  async def resume(self, job: JobRecord) -> None:
    # A crash between completing the outline and fanning out leaves the course without lessons.
    if job.status == "completed" and job.request.get("generate_lessons"):
      await self._coordinator.fan_out_course(job)


class LessonContentHandler(JobHandlerBase):
  kind = JobKind.LESSON_CONTENT

  def __init__(self, *, jobs_repo: JobsRepository, publisher: EventPublisher, ai: AIProvider, storage: ObjectStorage, coordinator: FanOutCoordinator, notifications: NotificationService) -> None:
    super().__init__(jobs_repo=jobs_repo, publisher=publisher)
    self._ai = ai
    self._storage = storage
    self._coordinator = coordinator
    self._notifications = notifications

  async def execute(self, job: JobRecord) -> None:
    outline_job_id = require_payload_str(job.request, "outline_job_id")
    section_index = _require_index(job.request, "section_index")
    lesson_index = _require_index(job.request, "lesson_index")

    outline_job = await self._jobs_repo.get_job(outline_job_id)
    if outline_job is None or outline_job.tenant_id != job.tenant_id or not outline_job.result_path:
      raise TerminalJobError(f"outline {outline_job_id} is not available")
    outline = await self._storage.read_json(outline_job.result_path)
    lesson = _pick_lesson(outline, section_index, lesson_index)

    result = await self._ai.generate_lesson_content({"course_id": outline.get("course_id"), "section": section_index, "lesson": lesson_index, "lesson_title": lesson.get("title"), "section_title": lesson.get("section_title")})
    course_id = str(outline.get("course_id") or outline_job_id)
    path = tenant_path(job.tenant_id, "courses", course_id, "lessons", f"{section_index}-{lesson_index}.json")
    await self._storage.write_json(path, {"section_index": section_index, "lesson_index": lesson_index, "components": result.components})

    completed = await self._jobs_repo.complete_job(job.job_id, result_path=path, tokens_used=result.tokens_used, progress_message="Lesson ready")
    if completed is None:
      logger.warning("Lesson job %s left running state before completion", job.job_id)
      return

    await publish_job_event(self._publisher, completed, "completed")
    if completed.parent_job_id:
      await self._coordinator.on_child_terminal(completed)
    else:
      await self._notifications.notify_job_ready(completed)

  async def resume(self, job: JobRecord) -> None:
    # Fan-in is idempotent; redelivery after a crash between complete and finalize closes the gap.
    if job.parent_job_id:
      await self._coordinator.on_child_terminal(job)


def _require_index(payload: dict[str, Any], key: str) -> int:
  value = payload.get(key)
  if not isinstance(value, int) or isinstance(value, bool) or value < 0:
    raise TerminalJobError(f"malformed payload: {key} must be a non-negative integer")
  return value


def _pick_lesson(outline: dict[str, Any], section_index: int, lesson_index: int) -> dict[str, Any]:
  sections = outline.get("sections") or []
  try:
    section = sections[section_index]
    lesson = section["lessons"][lesson_index]
  except (IndexError, KeyError, TypeError) as exc:
    raise TerminalJobError(f"lesson {section_index}-{lesson_index} not found in outline") from exc
  title = lesson.get("title") if isinstance(lesson, dict) else lesson
  return {"title": title, "section_title": section.get("title")}
