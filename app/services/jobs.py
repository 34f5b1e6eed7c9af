"""Client-facing job operations: enqueue, status lookup, event subscription and signup intake."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import HTTPException, status

from app.api.models import PendingSignupRequest
from app.events.publisher import EventPublisher, JobEvent, publish_job_event
from app.jobs.coordinator import FanOutCoordinator
from app.jobs.errors import TerminalJobError
from app.jobs.models import CLIENT_KINDS, DEFAULT_MAX_RETRIES, JobKind, JobRecord
from app.queue.interface import QueueClient
from app.storage.jobs_repo import JobsRepository
from app.storage.provisioning_repo import PendingProvisioningRecord, ProvisioningRepository
from app.utils.ids import generate_id, generate_job_id

logger = logging.getLogger(__name__)

_JOB_NOT_FOUND_MSG = "Job not found."

# Identifiers each client kind must carry; payloads never hold content snapshots.
_REQUIRED_FIELDS: dict[JobKind, tuple[str, ...]] = {
  JobKind.COURSE_OUTLINE: ("course_id",),
  JobKind.LESSON_CONTENT: ("outline_job_id", "section_index", "lesson_index"),
  JobKind.DOCUMENT_INGESTION: ("document_id", "source_path"),
  JobKind.FULL_COURSE: ("outline_job_id",),
}


class JobService:
  def __init__(
    self, *, jobs_repo: JobsRepository, provisioning_repo: ProvisioningRepository, queue: QueueClient, publisher: EventPublisher, coordinator: FanOutCoordinator, pending_ttl_seconds: int
  ) -> None:
    self._jobs_repo = jobs_repo
    self._provisioning_repo = provisioning_repo
    self._queue = queue
    self._publisher = publisher
    self._coordinator = coordinator
    self._pending_ttl_seconds = pending_ttl_seconds

  async def enqueue(self, kind: str, payload: dict[str, Any], *, tenant_id: str, user_id: str | None, idempotency_key: str | None = None) -> JobRecord:
    """Persist a job row, then publish its message; the row is the source of truth."""
    job_kind = _parse_client_kind(kind)
    _validate_payload(job_kind, payload)

    if job_kind == JobKind.FULL_COURSE:
      return await self._start_full_course(payload["outline_job_id"], tenant_id=tenant_id)

    record = JobRecord(
      job_id=generate_job_id(),
      tenant_id=tenant_id,
      user_id=user_id,
      job_kind=job_kind,
      status="queued",
      request=dict(payload),
      max_retries=DEFAULT_MAX_RETRIES[job_kind],
      idempotency_key=f"{tenant_id}:{idempotency_key}" if idempotency_key else None,
    )
    job_id = await self._jobs_repo.create_job(record)
    stored = await self._jobs_repo.get_job(job_id)
    if stored is None:
      raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Job could not be stored.")
    if job_id != record.job_id:
      logger.info("Idempotent enqueue returned existing job %s", job_id)
      return stored

    try:
      await self._queue.enqueue(job_kind, {"job_id": job_id})
    except Exception as exc:  # noqa: BLE001
      # The queued-poll fallback claims the row even if the message never lands.
      logger.error("Queue publish failed for job %s; leaving it to the database poll: %s", job_id, exc, exc_info=True)

    logger.info("Enqueued %s job %s for tenant %s", job_kind.value, job_id, tenant_id)
    await publish_job_event(self._publisher, stored, "created")
    return stored

  async def get_job_status(self, job_id: str, *, tenant_id: str) -> JobRecord:
    job = await self._jobs_repo.get_job_for_tenant(tenant_id, job_id)
    if job is None:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_JOB_NOT_FOUND_MSG)
    return job

  async def list_children(self, job: JobRecord) -> list[JobRecord]:
    if not job.is_parent:
      return []
    return await self._jobs_repo.list_by_parent(job.job_id)

  def subscribe(self, user_id: str) -> AsyncIterator[JobEvent]:
    return self._publisher.subscribe(user_id)

  async def record_pending_signup(self, signup: PendingSignupRequest) -> PendingProvisioningRecord:
    """Store a signup at checkout start; an existing session is returned unchanged."""
    existing = await self._provisioning_repo.get_by_session(signup.checkout_session_id)
    if existing is not None:
      return existing
    record = PendingProvisioningRecord(
      id=generate_id(),
      checkout_session_id=signup.checkout_session_id,
      email=signup.email.strip().lower(),
      password_hash=signup.password_hash,
      first_name=signup.first_name,
      last_name=signup.last_name,
      company_name=signup.company_name,
      industry=signup.industry,
      team_size=signup.team_size,
      plan=signup.plan,
      seat_count=signup.seat_count,
      expires_at=datetime.now(UTC) + timedelta(seconds=self._pending_ttl_seconds),
    )
    await self._provisioning_repo.create(record)
    logger.info("Recorded pending signup for checkout session %s", record.checkout_session_id)
    return record

  async def handle_payment_webhook(self, *, session_id: str, customer_id: str | None, subscription_id: str | None, payment_status: str) -> PendingProvisioningRecord | None:
    """Mark a completed checkout paid and hand provisioning to the worker."""
    if payment_status != "complete":
      logger.info("Ignoring checkout session %s with status %s", session_id, payment_status)
      return None

    row = await self._provisioning_repo.mark_paid(session_id, customer_id=customer_id, subscription_id=subscription_id)
    if row is None:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Checkout session not found.")
    if row.status == "paid":
      # Duplicate webhooks enqueue again; the handler's claim makes that a no-op.
      await self._queue.enqueue(JobKind.ACCOUNT_PROVISIONING, {"checkout_session_id": session_id})
    return row

  async def _start_full_course(self, outline_job_id: str, *, tenant_id: str) -> JobRecord:
    outline_job = await self._jobs_repo.get_job_for_tenant(tenant_id, outline_job_id)
    if outline_job is None:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Outline job not found.")
    try:
      return await self._coordinator.fan_out_course(outline_job)
    except TerminalJobError as exc:
      raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Outline job is not completed.") from exc


def _parse_client_kind(kind: str) -> JobKind:
  try:
    job_kind = JobKind(kind)
  except ValueError as exc:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown job kind: {kind}") from exc
  if job_kind not in CLIENT_KINDS:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Job kind {kind} cannot be enqueued by clients.")
  return job_kind


def _validate_payload(kind: JobKind, payload: dict[str, Any]) -> None:
  missing = [field for field in _REQUIRED_FIELDS[kind] if payload.get(field) in (None, "")]
  if missing:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Missing payload fields: {', '.join(missing)}")
  for field in ("section_index", "lesson_index"):
    if field in _REQUIRED_FIELDS[kind] and (not isinstance(payload[field], int) or isinstance(payload[field], bool) or payload[field] < 0):
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} must be a non-negative integer")
