"""Claim-and-run behavior of the content handlers."""

from __future__ import annotations

import time

import msgspec
import pytest

from app.jobs.errors import RetryableJobError, TerminalJobError
from app.jobs.models import JobKind, JobRecord
from app.queue.models import QueueMessage, build_message


def _message(kind: JobKind, job_id: str, *, attempt: int = 0) -> QueueMessage:
  message = build_message(kind, {"job_id": job_id}, message_id=f"m-{job_id}", now=time.time())
  return msgspec.structs.replace(message, attempt=attempt)


async def _queued(jobs_repo, job_id: str, kind: JobKind, request: dict, **overrides) -> JobRecord:
  await jobs_repo.create_job(JobRecord(job_id=job_id, tenant_id="t1", user_id="u1", job_kind=kind, status="queued", request=request, **overrides))
  return await jobs_repo.get_job(job_id)


@pytest.mark.anyio
async def test_outline_job_writes_result_and_completes(runtime, jobs_repo, storage, publisher) -> None:
  await _queued(jobs_repo, "o1", JobKind.COURSE_OUTLINE, {"course_id": "c1", "title": "Onboarding"})

  await runtime.registry.resolve(JobKind.COURSE_OUTLINE).run(_message(JobKind.COURSE_OUTLINE, "o1"))

  job = await jobs_repo.get_job("o1")
  assert job.status == "completed"
  assert job.result_path == "tenants/t1/courses/c1/outline.json"
  assert job.tokens_used == 50
  assert storage.objects[job.result_path]["course_id"] == "c1"
  assert [event.event_type for _, event in publisher.published] == ["progress", "completed"]
  # Without generate_lessons no course parent is created.
  assert [record.job_kind for record in jobs_repo.all()] == [JobKind.COURSE_OUTLINE]


@pytest.mark.anyio
async def test_outline_with_generate_lessons_fans_out(runtime, jobs_repo, queue) -> None:
  await _queued(jobs_repo, "o1", JobKind.COURSE_OUTLINE, {"course_id": "c1", "generate_lessons": True})

  await runtime.registry.resolve(JobKind.COURSE_OUTLINE).run(_message(JobKind.COURSE_OUTLINE, "o1"))

  parents = [record for record in jobs_repo.all() if record.job_kind == JobKind.FULL_COURSE]
  assert len(parents) == 1
  assert len(await jobs_repo.list_by_parent(parents[0].job_id)) == 3
  assert {message.kind for message in queue.pending()} == {"lesson_content"}


@pytest.mark.anyio
async def test_duplicate_delivery_of_running_job_is_skipped(runtime, jobs_repo, ai) -> None:
  await _queued(jobs_repo, "o1", JobKind.COURSE_OUTLINE, {"course_id": "c1"})
  await jobs_repo.claim_job("o1")

  await runtime.registry.resolve(JobKind.COURSE_OUTLINE).run(_message(JobKind.COURSE_OUTLINE, "o1"))

  assert ai.calls == []
  assert (await jobs_repo.get_job("o1")).status == "running"


@pytest.mark.anyio
async def test_retry_delivery_resumes_running_job(runtime, jobs_repo, ai) -> None:
  await _queued(jobs_repo, "o1", JobKind.COURSE_OUTLINE, {"course_id": "c1"})
  ai.failures.append(RetryableJobError("AI service error (503)"))
  handler = runtime.registry.resolve(JobKind.COURSE_OUTLINE)

  with pytest.raises(RetryableJobError):
    await handler.run(_message(JobKind.COURSE_OUTLINE, "o1"))
  await handler.run(_message(JobKind.COURSE_OUTLINE, "o1", attempt=1))

  assert (await jobs_repo.get_job("o1")).status == "completed"


@pytest.mark.anyio
async def test_redelivered_completed_outline_recovers_missing_fan_out(runtime, jobs_repo, storage) -> None:
  await storage.write_json("tenants/t1/courses/c1/outline.json", {"course_id": "c1", "sections": [{"lessons": ["a"]}]})
  await jobs_repo.create_job(
    JobRecord(job_id="o1", tenant_id="t1", user_id="u1", job_kind=JobKind.COURSE_OUTLINE, status="completed", request={"course_id": "c1", "generate_lessons": True}, result_path="tenants/t1/courses/c1/outline.json")
  )

  await runtime.registry.resolve(JobKind.COURSE_OUTLINE).run(_message(JobKind.COURSE_OUTLINE, "o1", attempt=1))

  assert len([record for record in jobs_repo.all() if record.job_kind == JobKind.LESSON_CONTENT]) == 1


@pytest.mark.anyio
async def test_lesson_requires_outline_from_same_tenant(runtime, jobs_repo, storage) -> None:
  await storage.write_json("tenants/t2/courses/c9/outline.json", {"course_id": "c9", "sections": [{"lessons": ["a"]}]})
  await jobs_repo.create_job(JobRecord(job_id="foreign", tenant_id="t2", job_kind=JobKind.COURSE_OUTLINE, status="completed", request={}, result_path="tenants/t2/courses/c9/outline.json"))
  await _queued(jobs_repo, "l1", JobKind.LESSON_CONTENT, {"outline_job_id": "foreign", "section_index": 0, "lesson_index": 0})

  with pytest.raises(TerminalJobError):
    await runtime.registry.resolve(JobKind.LESSON_CONTENT).run(_message(JobKind.LESSON_CONTENT, "l1"))


@pytest.mark.anyio
async def test_lesson_out_of_range_is_terminal(runtime, jobs_repo, storage) -> None:
  await storage.write_json("tenants/t1/courses/c1/outline.json", {"course_id": "c1", "sections": [{"lessons": ["a"]}]})
  await jobs_repo.create_job(JobRecord(job_id="o1", tenant_id="t1", job_kind=JobKind.COURSE_OUTLINE, status="completed", request={}, result_path="tenants/t1/courses/c1/outline.json"))
  await _queued(jobs_repo, "l1", JobKind.LESSON_CONTENT, {"outline_job_id": "o1", "section_index": 0, "lesson_index": 4})

  with pytest.raises(TerminalJobError, match="0-4"):
    await runtime.registry.resolve(JobKind.LESSON_CONTENT).run(_message(JobKind.LESSON_CONTENT, "l1"))


@pytest.mark.anyio
async def test_ingestion_rejects_paths_outside_the_tenant(runtime, jobs_repo) -> None:
  await _queued(jobs_repo, "d1", JobKind.DOCUMENT_INGESTION, {"document_id": "doc-1", "source_path": "tenants/t2/uploads/doc.txt"})

  with pytest.raises(TerminalJobError, match="outside tenant"):
    await runtime.registry.resolve(JobKind.DOCUMENT_INGESTION).run(_message(JobKind.DOCUMENT_INGESTION, "d1"))


@pytest.mark.anyio
async def test_ingestion_stores_chunks(runtime, jobs_repo, storage) -> None:
  storage.objects["tenants/t1/uploads/doc.txt"] = "Safety first.\n\nWear gloves.\n\nReport incidents."
  await _queued(jobs_repo, "d1", JobKind.DOCUMENT_INGESTION, {"document_id": "doc-1", "source_path": "tenants/t1/uploads/doc.txt"})

  await runtime.registry.resolve(JobKind.DOCUMENT_INGESTION).run(_message(JobKind.DOCUMENT_INGESTION, "d1"))

  job = await jobs_repo.get_job("d1")
  assert job.status == "completed"
  assert job.progress_message == "Processed 3 sections"
  assert storage.objects["tenants/t1/documents/doc-1/ingestion.json"]["chunks"] == ["Safety first.", "Wear gloves.", "Report incidents."]


@pytest.mark.anyio
async def test_kind_mismatch_is_terminal(runtime, jobs_repo) -> None:
  await _queued(jobs_repo, "d1", JobKind.DOCUMENT_INGESTION, {"document_id": "doc-1", "source_path": "tenants/t1/x"})
  with pytest.raises(TerminalJobError):
    await runtime.registry.resolve(JobKind.COURSE_OUTLINE).run(_message(JobKind.COURSE_OUTLINE, "d1"))
