"""Shared test doubles and fixtures for the job orchestration tests."""

from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

# Ensure required settings are available before importing the app.
os.environ.setdefault("AUTHORLY_ALLOWED_ORIGINS", "http://localhost")
os.environ.setdefault("AUTHORLY_QUEUE_PROVIDER", "memory")

import pytest  # noqa: E402

from app.config import Settings  # noqa: E402
from app.events.memory import InMemoryEventPublisher  # noqa: E402
from app.jobs.models import PARENT_KINDS, TERMINAL_STATUSES, ChildStats, FinalizationResult, JobRecord, JobStatus, children_outstanding, parent_failure_message, parent_progress  # noqa: E402
from app.queue.memory import InMemoryQueueClient  # noqa: E402
from app.runtime import Runtime, assemble_runtime  # noqa: E402
from app.scheduler.locks import InMemoryLock  # noqa: E402
from app.services.contracts import IdentityAccount, IngestionResult, LessonResult, OutlineResult, ProvisionedAccount, UserContact  # noqa: E402
from app.storage.provisioning_repo import PendingProvisioningRecord, ProvisioningStatus  # noqa: E402


def _now() -> datetime:
  return datetime.now(UTC)


def make_settings(**overrides: Any) -> Settings:
  """Settings for in-memory runs; email delivery and background loops are off."""
  values: dict[str, Any] = {
    "environment": "test",
    "debug": False,
    "allowed_origins": ("http://localhost",),
    "log_max_bytes": 1_000_000,
    "log_backup_count": 1,
    "log_http_4xx": False,
    "pg_dsn": None,
    "pg_connect_timeout": 5,
    "redis_url": None,
    "queue_provider": "memory",
    "queue_heartbeat_ttl_seconds": 30.0,
    "worker_enabled": False,
    "worker_concurrency": 4,
    "worker_dequeue_timeout_seconds": 0.05,
    "scheduler_enabled": False,
    "scheduler_tick_seconds": 0.05,
    "poll_interval_seconds": 5,
    "poll_batch_size": 5,
    "reconcile_interval_seconds": 900,
    "cleanup_interval_seconds": 3600,
    "provisioning_stuck_seconds": 300,
    "provisioning_warning_seconds": 900,
    "provisioning_critical_seconds": 1800,
    "job_stuck_seconds": 1800,
    "pending_provisioning_ttl_seconds": 86400,
    "retry_base_seconds": 0.01,
    "retry_max_seconds": 0.05,
    "storage_bucket": "authorly-test",
    "gcs_storage_host": None,
    "gcp_project_id": None,
    "ai_service_url": None,
    "ai_service_api_key": None,
    "ai_timeout_seconds": 5,
    "firebase_project_id": None,
    "firebase_service_account_json_path": None,
    "email_notifications_enabled": False,
    "email_from_address": None,
    "email_from_name": None,
    "mailersend_api_key": None,
    "mailersend_timeout_seconds": 5,
    "mailersend_base_url": "https://api.mailersend.test/v1",
    "ops_alert_email": None,
    "app_base_url": "http://localhost:5173",
    "task_secret": "test-task-secret",
  }
  values.update(overrides)
  return Settings(**values)


class InMemoryJobsRepo:
  """Jobs repository double; a lock stands in for the parent row lock and SKIP LOCKED."""

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}
    self._lock = asyncio.Lock()

  async def create_job(self, record: JobRecord) -> str:
    key = record.idempotency_key or f"{record.job_kind.value}:{record.job_id}"
    for existing in self._jobs.values():
      if existing.idempotency_key == key:
        return existing.job_id
    now = _now()
    self._jobs[record.job_id] = replace(record, idempotency_key=key, request=dict(record.request), created_at=record.created_at or now, updated_at=now)
    return record.job_id

  async def get_job(self, job_id: str) -> JobRecord | None:
    job = self._jobs.get(job_id)
    return replace(job) if job is not None else None

  async def get_job_for_tenant(self, tenant_id: str, job_id: str) -> JobRecord | None:
    job = self._jobs.get(job_id)
    if job is None or job.tenant_id != tenant_id:
      return None
    return replace(job)

  async def find_by_idempotency_key(self, idempotency_key: str) -> JobRecord | None:
    for job in self._jobs.values():
      if job.idempotency_key == idempotency_key:
        return replace(job)
    return None

  async def update_job(self, job_id: str, **fields: Any) -> JobRecord | None:
    job = self._jobs.get(job_id)
    if job is None:
      return None
    updated = replace(job, **{key: value for key, value in fields.items() if value is not None}, updated_at=_now())
    self._jobs[job_id] = updated
    return replace(updated)

  async def list_by_parent(self, parent_job_id: str) -> list[JobRecord]:
    return [replace(job) for job in self._jobs.values() if job.parent_job_id == parent_job_id]

  async def next_queued(self) -> JobRecord | None:
    async with self._lock:
      queued = sorted((job for job in self._jobs.values() if job.status == "queued" and job.job_kind not in PARENT_KINDS), key=lambda job: job.created_at or _now())
      if not queued:
        return None
      return self._set(queued[0].job_id, status="running", started_at=_now())

  async def claim_job(self, job_id: str) -> JobRecord | None:
    async with self._lock:
      job = self._jobs.get(job_id)
      if job is None or job.status != "queued":
        return None
      return self._set(job_id, status="running", started_at=_now())

  async def requeue_stale_running(self, job_id: str, *, older_than: datetime, error_message: str) -> JobRecord | None:
    async with self._lock:
      job = self._jobs.get(job_id)
      if job is None or job.status != "running" or job.started_at is None or job.started_at >= older_than:
        return None
      return self._set(job_id, status="queued", started_at=None, retry_count=job.retry_count + 1, error_message=error_message)

  async def record_retry(self, job_id: str, error_message: str) -> JobRecord | None:
    job = self._jobs.get(job_id)
    if job is None or job.is_terminal:
      return None
    return self._set(job_id, retry_count=job.retry_count + 1, error_message=error_message)

  async def complete_job(self, job_id: str, *, result_path: str | None, tokens_used: int, progress_message: str | None = None) -> JobRecord | None:
    job = self._jobs.get(job_id)
    if job is None or job.status != "running":
      return None
    return self._set(job_id, status="completed", progress=100, progress_message=progress_message, result_path=result_path, tokens_used=tokens_used, error_message=None, completed_at=_now())

  async def fail_job(self, job_id: str, error_message: str) -> JobRecord | None:
    job = self._jobs.get(job_id)
    if job is None or job.is_terminal:
      return None
    return self._set(job_id, status="failed", error_message=error_message, completed_at=_now())

  async def try_finalize_parent(self, parent_job_id: str) -> FinalizationResult:
    async with self._lock:
      parent = self._jobs.get(parent_job_id)
      if parent is None:
        raise LookupError(f"Parent job {parent_job_id} not found")
      # Yield while holding the lock so concurrent finalizers really interleave.
      await asyncio.sleep(0)
      stats = self._child_stats(parent_job_id)
      if parent.status in TERMINAL_STATUSES:
        return FinalizationResult.from_stats(stats, was_finalized=False, all_complete=True, parent_status=parent.status)
      if children_outstanding(stats, parent.expected_children):
        percent, message = parent_progress(stats, parent.expected_children)
        self._set(parent_job_id, progress=max(parent.progress, percent), progress_message=message)
        return FinalizationResult.from_stats(stats, was_finalized=False, all_complete=False, parent_status=parent.status)

      final_status: JobStatus = "failed" if stats.failed > 0 else "completed"
      self._set(
        parent_job_id,
        status=final_status,
        progress=100,
        tokens_used=stats.tokens_used,
        completed_at=_now(),
        progress_message=f"Generated {stats.completed} of {stats.total} lessons.",
        error_message=parent_failure_message(stats.failed) if stats.failed > 0 else None,
      )
      return FinalizationResult.from_stats(stats, was_finalized=True, all_complete=True, parent_status=final_status)

  async def list_stale(self, *, status: JobStatus, older_than: datetime, limit: int = 100) -> list[JobRecord]:
    stale: list[JobRecord] = []
    for job in self._jobs.values():
      age = job.started_at if status == "running" else job.updated_at
      if job.status == status and job.job_kind not in PARENT_KINDS and age is not None and age < older_than:
        stale.append(replace(job))
    return stale[:limit]

  def backdate(self, job_id: str, *, seconds: int) -> None:
    """Age a row's timestamps for staleness tests."""
    job = self._jobs[job_id]
    delta = timedelta(seconds=seconds)
    self._jobs[job_id] = replace(
      job,
      created_at=(job.created_at or _now()) - delta,
      updated_at=(job.updated_at or _now()) - delta,
      started_at=job.started_at - delta if job.started_at else None,
    )

  def all(self) -> list[JobRecord]:
    return [replace(job) for job in self._jobs.values()]

  def _set(self, job_id: str, **fields: Any) -> JobRecord:
    updated = replace(self._jobs[job_id], updated_at=_now(), **fields)
    self._jobs[job_id] = updated
    return replace(updated)

  def _child_stats(self, parent_job_id: str) -> ChildStats:
    children = [job for job in self._jobs.values() if job.parent_job_id == parent_job_id]
    return ChildStats(
      total=len(children),
      completed=sum(1 for job in children if job.status == "completed"),
      failed=sum(1 for job in children if job.status == "failed"),
      pending=sum(1 for job in children if job.status not in TERMINAL_STATUSES),
      tokens_used=sum(job.tokens_used for job in children),
    )


class InMemoryProvisioningRepo:
  """Pending provisioning double with the same conditional transitions as the SQL repository."""

  def __init__(self) -> None:
    self._rows: dict[str, PendingProvisioningRecord] = {}
    self._lock = asyncio.Lock()

  async def create(self, record: PendingProvisioningRecord) -> None:
    now = _now()
    self._rows[record.checkout_session_id] = replace(record, created_at=record.created_at or now, updated_at=now)

  async def get_by_session(self, checkout_session_id: str) -> PendingProvisioningRecord | None:
    row = self._rows.get(checkout_session_id)
    return replace(row) if row is not None else None

  async def mark_paid(self, checkout_session_id: str, *, customer_id: str | None, subscription_id: str | None) -> PendingProvisioningRecord | None:
    row = self._rows.get(checkout_session_id)
    if row is None:
      return None
    if row.status == "awaiting_payment":
      now = _now()
      row = replace(row, status="paid", stripe_customer_id=customer_id, stripe_subscription_id=subscription_id, paid_at=now, updated_at=now)
      self._rows[checkout_session_id] = row
    return replace(row)

  async def claim_for_provisioning(self, checkout_session_id: str, *, from_statuses: tuple[ProvisioningStatus, ...] = ("paid",)) -> PendingProvisioningRecord | None:
    async with self._lock:
      row = self._rows.get(checkout_session_id)
      if row is None or row.status not in from_statuses:
        return None
      # Yield so a competing claimer is scheduled between the check and the write.
      await asyncio.sleep(0)
      row = replace(row, status="provisioning", error_message=None, updated_at=_now())
      self._rows[checkout_session_id] = row
      return replace(row)

  async def mark_provisioned(self, checkout_session_id: str, *, tenant_id: str) -> None:
    self._rows[checkout_session_id] = replace(self._rows[checkout_session_id], status="provisioned", tenant_id=tenant_id, error_message=None, updated_at=_now())

  async def mark_failed(self, checkout_session_id: str, error_message: str) -> None:
    self._rows[checkout_session_id] = replace(self._rows[checkout_session_id], status="failed", error_message=error_message, updated_at=_now())

  async def find_stuck_paid(self, *, older_than: datetime, limit: int = 100) -> list[PendingProvisioningRecord]:
    stuck = [replace(row) for row in self._rows.values() if row.status == "paid" and row.paid_at is not None and row.paid_at < older_than]
    return sorted(stuck, key=lambda row: row.paid_at or _now())[:limit]

  async def find_stuck_provisioning(self, *, older_than: datetime, limit: int = 100) -> list[PendingProvisioningRecord]:
    stuck = [replace(row) for row in self._rows.values() if row.status == "provisioning" and row.updated_at is not None and row.updated_at < older_than]
    return sorted(stuck, key=lambda row: row.updated_at or _now())[:limit]

  async def delete_expired(self, *, now: datetime) -> int:
    expired = [key for key, row in self._rows.items() if row.status == "awaiting_payment" and row.expires_at < now]
    for key in expired:
      del self._rows[key]
    return len(expired)

  def set_paid_at(self, checkout_session_id: str, paid_at: datetime) -> None:
    self._rows[checkout_session_id] = replace(self._rows[checkout_session_id], paid_at=paid_at)

  def set_updated_at(self, checkout_session_id: str, updated_at: datetime) -> None:
    self._rows[checkout_session_id] = replace(self._rows[checkout_session_id], updated_at=updated_at)


class FakeAIProvider:
  """Deterministic AI double; queue exceptions in `failures` to fail the next calls."""

  def __init__(self, *, sections: list[dict[str, Any]] | None = None) -> None:
    self.sections = sections if sections is not None else [{"title": "Basics", "lessons": [{"title": "Intro"}, {"title": "Setup"}]}, {"title": "Advanced", "lessons": [{"title": "Scaling"}]}]
    self.failures: list[Exception] = []
    self.calls: list[tuple[str, Any]] = []

  def _maybe_fail(self) -> None:
    if self.failures:
      raise self.failures.pop(0)

  async def generate_outline(self, request: dict[str, Any]) -> OutlineResult:
    self.calls.append(("outline", request))
    self._maybe_fail()
    return OutlineResult(sections=self.sections, tokens_used=50)

  async def generate_lesson_content(self, request: dict[str, Any]) -> LessonResult:
    self.calls.append(("lesson", request))
    self._maybe_fail()
    return LessonResult(components=[{"type": "markdown", "text": f"Lesson {request['section']}-{request['lesson']}"}], tokens_used=100)

  async def ingest_document(self, text: str) -> IngestionResult:
    self.calls.append(("ingest", text))
    self._maybe_fail()
    return IngestionResult(summary=text[:20], chunks=[part for part in text.split("\n\n") if part.strip()], tokens_used=30)


class FakeObjectStorage:
  def __init__(self) -> None:
    self.objects: dict[str, Any] = {}

  async def read_json(self, path: str) -> dict[str, Any]:
    if path not in self.objects:
      raise FileNotFoundError(path)
    return self.objects[path]

  async def write_json(self, path: str, data: dict[str, Any]) -> None:
    self.objects[path] = data

  async def read_text(self, path: str) -> str:
    if path not in self.objects:
      raise FileNotFoundError(path)
    return str(self.objects[path])

  async def presigned_url(self, path: str, *, ttl_seconds: int = 900) -> str:
    return f"https://storage.test/{path}?ttl={ttl_seconds}"


class FakeIdentityProvider:
  def __init__(self) -> None:
    self.accounts: dict[str, IdentityAccount] = {}
    self.create_calls = 0
    self.failures: list[Exception] = []

  async def find_by_email(self, email: str) -> IdentityAccount | None:
    return self.accounts.get(email)

  async def create_account(self, *, email: str, password_hash: str, first_name: str, last_name: str) -> str:
    self.create_calls += 1
    if self.failures:
      raise self.failures.pop(0)
    identity_id = f"uid-{len(self.accounts) + 1}"
    self.accounts[email] = IdentityAccount(identity_id=identity_id, email=email)
    return identity_id


class FakeAccountStore:
  def __init__(self) -> None:
    self.by_identity: dict[str, ProvisionedAccount] = {}
    self.contacts: dict[str, UserContact] = {}
    self.create_calls = 0
    self.failures: list[Exception] = []

  async def find_by_identity(self, identity_id: str) -> ProvisionedAccount | None:
    return self.by_identity.get(identity_id)

  async def create_account(self, registration: PendingProvisioningRecord, identity_id: str) -> ProvisionedAccount:
    self.create_calls += 1
    if self.failures:
      raise self.failures.pop(0)
    account = ProvisionedAccount(tenant_id=f"tenant-{len(self.by_identity) + 1}", user_id=f"user-{len(self.by_identity) + 1}", tenant_slug="acme-1234abcd")
    self.by_identity[identity_id] = account
    self.contacts[account.user_id] = UserContact(email=registration.email, first_name=registration.first_name)
    return account

  async def get_user_contact(self, user_id: str) -> UserContact | None:
    return self.contacts.get(user_id)


def make_pending_signup(checkout_session_id: str = "cs_test_1", **overrides: Any) -> PendingProvisioningRecord:
  values: dict[str, Any] = {
    "id": f"pp-{checkout_session_id}",
    "checkout_session_id": checkout_session_id,
    "email": "ada@example.com",
    "password_hash": "$2b$12$abcdefghijklmnopqrstuv",
    "first_name": "Ada",
    "last_name": "Lovelace",
    "company_name": "Acme Learning",
    "plan": "team",
    "expires_at": _now() + timedelta(days=1),
  }
  values.update(overrides)
  return PendingProvisioningRecord(**values)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def settings() -> Settings:
  return make_settings()


@pytest.fixture
def jobs_repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()


@pytest.fixture
def provisioning_repo() -> InMemoryProvisioningRepo:
  return InMemoryProvisioningRepo()


@pytest.fixture
def queue() -> InMemoryQueueClient:
  return InMemoryQueueClient()


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
  return InMemoryEventPublisher()


@pytest.fixture
def ai() -> FakeAIProvider:
  return FakeAIProvider()


@pytest.fixture
def storage() -> FakeObjectStorage:
  return FakeObjectStorage()


@pytest.fixture
def identity() -> FakeIdentityProvider:
  return FakeIdentityProvider()


@pytest.fixture
def accounts() -> FakeAccountStore:
  return FakeAccountStore()


@pytest.fixture
def runtime(settings, queue, publisher, jobs_repo, provisioning_repo, ai, storage, identity, accounts) -> Runtime:
  """A fully wired runtime on in-memory parts; background loops are not started."""
  return assemble_runtime(
    settings,
    queue=queue,
    lock=InMemoryLock(),
    publisher=publisher,
    jobs_repo=jobs_repo,
    provisioning_repo=provisioning_repo,
    ai=ai,
    storage=storage,
    identity=identity,
    accounts=accounts,
  )


async def drain(runtime: Runtime, *, max_messages: int = 100, timeout: float = 0.0) -> int:
  """Process messages until none arrives within `timeout`; pass a timeout to wait out retry backoff."""
  processed = 0
  while processed < max_messages:
    message = await runtime.worker.run_once(timeout=timeout)
    if message is None:
      break
    processed += 1
  return processed


@pytest.fixture
def drain_queue():
  return drain


@pytest.fixture
def pending_signup_factory():
  return make_pending_signup


@pytest.fixture
def settings_factory():
  return make_settings
