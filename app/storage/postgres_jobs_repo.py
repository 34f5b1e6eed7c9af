"""Postgres-backed repository for background jobs using SQLAlchemy."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Select, Update, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_session_factory
from app.jobs.models import PARENT_KINDS, TERMINAL_STATUSES, ChildStats, FinalizationResult, JobKind, JobRecord, JobStatus, children_outstanding, parent_failure_message, parent_progress
from app.schema.jobs import Job
from app.storage.jobs_repo import JobsRepository

_PARENT_KIND_VALUES = tuple(kind.value for kind in PARENT_KINDS)
_TERMINAL_VALUES = tuple(TERMINAL_STATUSES)
_UPDATABLE_FIELDS = {"status", "progress", "progress_message", "result_path", "error_message", "tokens_used", "max_retries", "started_at", "completed_at", "user_id"}


def _now() -> datetime:
  return datetime.now(UTC)


def next_queued_statement() -> Select[tuple[Job]]:
  """Oldest queued non-parent row; SKIP LOCKED lets concurrent replicas each take a different row without waiting."""
  return select(Job).where(Job.status == "queued", Job.job_kind.not_in(_PARENT_KIND_VALUES)).order_by(Job.created_at.asc()).limit(1).with_for_update(skip_locked=True)


def claim_statement(job_id: str, *, now: datetime) -> Update:
  return update(Job).where(Job.job_id == job_id, Job.status == "queued").values(status="running", started_at=now, updated_at=now).returning(Job)


def complete_statement(job_id: str, *, result_path: str | None, tokens_used: int, progress_message: str | None, now: datetime) -> Update:
  return (
    update(Job)
    .where(Job.job_id == job_id, Job.status == "running")
    .values(status="completed", progress=100, progress_message=progress_message, result_path=result_path, tokens_used=tokens_used, error_message=None, completed_at=now, updated_at=now)
    .returning(Job)
  )


def fail_statement(job_id: str, *, error_message: str, now: datetime) -> Update:
  return update(Job).where(Job.job_id == job_id, Job.status.not_in(_TERMINAL_VALUES)).values(status="failed", error_message=error_message, completed_at=now, updated_at=now).returning(Job)


def requeue_stale_statement(job_id: str, *, older_than: datetime, error_message: str, now: datetime) -> Update:
  """Running row whose start predates the cutoff goes back to queued; a row that finished or restarted is left alone."""
  return (
    update(Job)
    .where(Job.job_id == job_id, Job.status == "running", Job.started_at < older_than)
    .values(status="queued", started_at=None, retry_count=Job.retry_count + 1, error_message=error_message, updated_at=now)
    .returning(Job)
  )


def parent_lock_statement(parent_job_id: str) -> Select[tuple[Job]]:
  """The parent row lock serializes sibling finalizers; it is held until the transaction commits."""
  return select(Job).where(Job.job_id == parent_job_id).with_for_update()


def child_stats_statement(parent_job_id: str) -> Select[Any]:
  """One pass over the children with FILTER counts per status."""
  return select(
    func.count().label("total"),
    func.count().filter(Job.status == "completed").label("completed"),
    func.count().filter(Job.status == "failed").label("failed"),
    func.count().filter(Job.status.not_in(_TERMINAL_VALUES)).label("pending"),
    func.coalesce(func.sum(Job.tokens_used), 0).label("tokens"),
  ).where(Job.parent_job_id == parent_job_id)


class PostgresJobsRepository(JobsRepository):
  """Persist jobs to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job(self, record: JobRecord) -> str:
    idempotency_key = record.idempotency_key or f"{record.job_kind.value}:{record.job_id}"
    async with self._session_factory() as session:
      stmt = (
        insert(Job)
        .values(
          job_id=record.job_id,
          tenant_id=record.tenant_id,
          user_id=record.user_id,
          job_kind=record.job_kind.value,
          status=record.status,
          parent_job_id=record.parent_job_id,
          request_json=record.request,
          progress=record.progress,
          progress_message=record.progress_message,
          tokens_used=record.tokens_used,
          retry_count=record.retry_count,
          max_retries=record.max_retries,
          expected_children=record.expected_children,
          idempotency_key=idempotency_key,
          started_at=record.started_at,
        )
        .on_conflict_do_nothing(index_elements=[Job.idempotency_key])
        .returning(Job.job_id)
      )
      inserted = (await session.execute(stmt)).scalar_one_or_none()
      await session.commit()
      if inserted is not None:
        return inserted
      # A replayed fan-out hits the unique key; hand back the row that already exists.
      existing = (await session.execute(select(Job.job_id).where(Job.idempotency_key == idempotency_key))).scalar_one()
      return existing

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      return self._model_to_record(row) if row is not None else None

  async def get_job_for_tenant(self, tenant_id: str, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.job_id == job_id, Job.tenant_id == tenant_id)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._model_to_record(row) if row is not None else None

  async def find_by_idempotency_key(self, idempotency_key: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = (await session.execute(select(Job).where(Job.idempotency_key == idempotency_key))).scalar_one_or_none()
      return self._model_to_record(row) if row is not None else None

  async def update_job(self, job_id: str, **fields: Any) -> JobRecord | None:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
      raise ValueError(f"Unsupported job fields: {sorted(unknown)}")
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      for name, value in fields.items():
        if value is not None:
          setattr(row, name, value)
      row.updated_at = _now()
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def list_by_parent(self, parent_job_id: str) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.parent_job_id == parent_job_id).order_by(Job.created_at.asc(), Job.job_id.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def next_queued(self) -> JobRecord | None:
    async with self._session_factory() as session:
      row = (await session.execute(next_queued_statement())).scalar_one_or_none()
      if row is None:
        return None
      now = _now()
      row.status = "running"
      row.started_at = now
      row.updated_at = now
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def claim_job(self, job_id: str) -> JobRecord | None:
    return await self._execute_returning(claim_statement(job_id, now=_now()))

  async def requeue_stale_running(self, job_id: str, *, older_than: datetime, error_message: str) -> JobRecord | None:
    return await self._execute_returning(requeue_stale_statement(job_id, older_than=older_than, error_message=error_message, now=_now()))

  async def record_retry(self, job_id: str, error_message: str) -> JobRecord | None:
    stmt = update(Job).where(Job.job_id == job_id, Job.status.not_in(_TERMINAL_VALUES)).values(retry_count=Job.retry_count + 1, error_message=error_message, updated_at=_now()).returning(Job)
    return await self._execute_returning(stmt)

  async def complete_job(self, job_id: str, *, result_path: str | None, tokens_used: int, progress_message: str | None = None) -> JobRecord | None:
    return await self._execute_returning(complete_statement(job_id, result_path=result_path, tokens_used=tokens_used, progress_message=progress_message, now=_now()))

  async def fail_job(self, job_id: str, error_message: str) -> JobRecord | None:
    return await self._execute_returning(fail_statement(job_id, error_message=error_message, now=_now()))

  async def try_finalize_parent(self, parent_job_id: str) -> FinalizationResult:
    async with self._session_factory() as session:
      async with session.begin():
        parent = (await session.execute(parent_lock_statement(parent_job_id))).scalar_one_or_none()
        if parent is None:
          raise LookupError(f"Parent job {parent_job_id} not found")

        stats = await self._child_stats(session, parent_job_id)
        if parent.status in TERMINAL_STATUSES:
          return FinalizationResult.from_stats(stats, was_finalized=False, all_complete=True, parent_status=parent.status)

        now = _now()
        if children_outstanding(stats, parent.expected_children):
          percent, message = parent_progress(stats, parent.expected_children)
          parent.progress = max(parent.progress, percent)
          parent.progress_message = message
          parent.updated_at = now
          return FinalizationResult.from_stats(stats, was_finalized=False, all_complete=False, parent_status=parent.status)

        final_status: JobStatus = "failed" if stats.failed > 0 else "completed"
        parent.status = final_status
        parent.progress = 100
        parent.tokens_used = stats.tokens_used
        parent.completed_at = now
        parent.updated_at = now
        parent.progress_message = f"Generated {stats.completed} of {stats.total} lessons."
        parent.error_message = parent_failure_message(stats.failed) if stats.failed > 0 else None
        return FinalizationResult.from_stats(stats, was_finalized=True, all_complete=True, parent_status=final_status)

  async def list_stale(self, *, status: JobStatus, older_than: datetime, limit: int = 100) -> list[JobRecord]:
    age_column = Job.started_at if status == "running" else Job.updated_at
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.status == status, Job.job_kind.not_in(_PARENT_KIND_VALUES), age_column < older_than).order_by(age_column.asc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def _execute_returning(self, stmt: Any) -> JobRecord | None:
    async with self._session_factory() as session:
      row = (await session.execute(stmt.execution_options(synchronize_session=False))).scalar_one_or_none()
      await session.commit()
      return self._model_to_record(row) if row is not None else None

  async def _child_stats(self, session: AsyncSession, parent_job_id: str) -> ChildStats:
    row = (await session.execute(child_stats_statement(parent_job_id))).one()
    return ChildStats(total=int(row.total), completed=int(row.completed), failed=int(row.failed), pending=int(row.pending), tokens_used=int(row.tokens))

  def _model_to_record(self, row: Job) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      tenant_id=row.tenant_id,
      user_id=row.user_id,
      job_kind=JobKind(row.job_kind),
      status=row.status,
      request=row.request_json,
      parent_job_id=row.parent_job_id,
      progress=row.progress,
      progress_message=row.progress_message,
      result_path=row.result_path,
      error_message=row.error_message,
      tokens_used=row.tokens_used,
      retry_count=row.retry_count,
      max_retries=row.max_retries,
      expected_children=row.expected_children,
      idempotency_key=row.idempotency_key,
      created_at=row.created_at,
      updated_at=row.updated_at,
      started_at=row.started_at,
      completed_at=row.completed_at,
    )
