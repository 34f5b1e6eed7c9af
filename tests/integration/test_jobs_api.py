"""Enqueue and status surfaces exercised end to end over ASGI."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from app.config import get_settings
from app.jobs.models import JobKind
from app.main import app

TENANT = {"X-Tenant-Id": "t1", "X-User-Id": "u1"}


@pytest.fixture
async def client(runtime, settings):
  app.state.runtime = runtime
  app.dependency_overrides[get_settings] = lambda: settings
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()
  app.state.runtime = None


@pytest.mark.anyio
async def test_enqueue_requires_gateway_identity(client) -> None:
  response = await client.post("/v1/jobs", json={"kind": "course_outline", "payload": {"course_id": "c1"}})
  assert response.status_code == 401


@pytest.mark.anyio
async def test_enqueue_returns_job_id_and_queues_message(client, queue) -> None:
  response = await client.post("/v1/jobs", json={"kind": "course_outline", "payload": {"course_id": "c1", "title": "Forklift safety"}}, headers=TENANT)

  assert response.status_code == 202
  body = response.json()
  assert body["status"] == "queued"
  assert [(message.kind, message.payload) for message in queue.pending()] == [("course_outline", {"job_id": body["job_id"]})]
  assert response.headers["x-request-id"]

  status_response = await client.get(f"/v1/jobs/{body['job_id']}", headers=TENANT)
  assert status_response.status_code == 200
  assert status_response.json()["kind"] == "course_outline"
  assert status_response.json()["progress"] == 0


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("kind", "payload", "detail"),
  [
    ("video_render", {}, "Unknown job kind"),
    ("account_provisioning", {"checkout_session_id": "cs_1"}, "cannot be enqueued"),
    ("lesson_content", {"outline_job_id": "o1"}, "section_index"),
    ("lesson_content", {"outline_job_id": "o1", "section_index": -1, "lesson_index": 0}, "non-negative"),
    ("document_ingestion", {"document_id": "d1"}, "source_path"),
  ],
)
async def test_enqueue_rejects_invalid_requests(client, kind, payload, detail) -> None:
  response = await client.post("/v1/jobs", json={"kind": kind, "payload": payload}, headers=TENANT)
  assert response.status_code == 400
  assert detail in response.json()["detail"]


@pytest.mark.anyio
async def test_enqueue_is_idempotent_per_tenant_key(client, queue) -> None:
  request = {"kind": "course_outline", "payload": {"course_id": "c1"}, "idempotency_key": "retry-click"}
  first = await client.post("/v1/jobs", json=request, headers=TENANT)
  second = await client.post("/v1/jobs", json=request, headers=TENANT)
  other_tenant = await client.post("/v1/jobs", json=request, headers={"X-Tenant-Id": "t2", "X-User-Id": "u9"})

  assert first.json()["job_id"] == second.json()["job_id"]
  assert other_tenant.json()["job_id"] != first.json()["job_id"]
  assert len(queue.pending()) == 2


@pytest.mark.anyio
async def test_status_is_scoped_to_the_tenant(client) -> None:
  created = await client.post("/v1/jobs", json={"kind": "course_outline", "payload": {"course_id": "c1"}}, headers=TENANT)
  response = await client.get(f"/v1/jobs/{created.json()['job_id']}", headers={"X-Tenant-Id": "t2", "X-User-Id": "u1"})
  assert response.status_code == 404
  assert response.json()["detail"] == "Job not found."


@pytest.mark.anyio
async def test_full_course_runs_to_completion(client, runtime, jobs_repo, drain_queue) -> None:
  created = await client.post("/v1/jobs", json={"kind": "course_outline", "payload": {"course_id": "c1", "generate_lessons": True}}, headers=TENANT)
  outline_id = created.json()["job_id"]

  await drain_queue(runtime)

  outline = (await client.get(f"/v1/jobs/{outline_id}", headers=TENANT)).json()
  assert outline["status"] == "completed"
  parent = next(job for job in jobs_repo.all() if job.job_kind == JobKind.FULL_COURSE)
  body = (await client.get(f"/v1/jobs/{parent.job_id}", headers=TENANT)).json()
  assert body["status"] == "completed"
  assert body["progress"] == 100
  assert body["tokens_used"] == 300
  assert body["progress_message"] == "Generated 3 of 3 lessons."
  assert sorted(child["status"] for child in body["child_jobs"]) == ["completed"] * 3


@pytest.mark.anyio
async def test_full_course_enqueue_fans_out_a_completed_outline(client, runtime, drain_queue) -> None:
  created = await client.post("/v1/jobs", json={"kind": "course_outline", "payload": {"course_id": "c1"}}, headers=TENANT)
  outline_id = created.json()["job_id"]

  early = await client.post("/v1/jobs", json={"kind": "full_course", "payload": {"outline_job_id": outline_id}}, headers=TENANT)
  assert early.status_code == 409

  await drain_queue(runtime)
  response = await client.post("/v1/jobs", json={"kind": "full_course", "payload": {"outline_job_id": outline_id}}, headers=TENANT)
  assert response.status_code == 202
  assert response.json()["status"] == "running"

  missing = await client.post("/v1/jobs", json={"kind": "full_course", "payload": {"outline_job_id": "nope"}}, headers=TENANT)
  assert missing.status_code == 404


@pytest.mark.anyio
async def test_lost_queue_publish_is_recovered_by_the_poll(client, runtime, queue, jobs_repo, monkeypatch) -> None:
  async def broken_enqueue(*args, **kwargs):
    raise ConnectionError("redis unavailable")

  monkeypatch.setattr(queue, "enqueue", broken_enqueue)
  created = await client.post("/v1/jobs", json={"kind": "course_outline", "payload": {"course_id": "c1"}}, headers=TENANT)
  assert created.status_code == 202
  monkeypatch.undo()

  await runtime.registry.resolve(JobKind.QUEUED_POLL).run(await queue.enqueue(JobKind.QUEUED_POLL, {}))

  assert (await jobs_repo.get_job(created.json()["job_id"])).status == "completed"


@pytest.mark.anyio
async def test_extra_request_fields_are_rejected(client) -> None:
  response = await client.post("/v1/jobs", json={"kind": "course_outline", "payload": {"course_id": "c1"}, "priority": "high"}, headers=TENANT)
  assert response.status_code == 422
  assert "input" not in response.json()["detail"][0]


@pytest.mark.anyio
async def test_health_reports_queue_depths(client) -> None:
  await client.post("/v1/jobs", json={"kind": "course_outline", "payload": {"course_id": "c1"}}, headers=TENANT)
  response = await client.get("/health")
  assert response.status_code == 200
  assert response.json()["queue"]["default"] == 1


@pytest.mark.anyio
async def test_database_outage_returns_retryable_503(client, jobs_repo, monkeypatch) -> None:
  async def unavailable(record):
    raise OperationalError("INSERT INTO jobs", {}, ConnectionResetError("connection reset by peer"))

  monkeypatch.setattr(jobs_repo, "create_job", unavailable)
  response = await client.post("/v1/jobs", json={"kind": "course_outline", "payload": {"course_id": "c1"}}, headers=TENANT)

  assert response.status_code == 503
  assert response.headers["retry-after"] == "5"
  assert response.json()["requestId"] == response.headers["x-request-id"]
