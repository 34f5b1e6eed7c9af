"""Repository contract for the job store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from app.jobs.models import FinalizationResult, JobRecord, JobStatus


class JobsRepository(Protocol):
  """Persistence interface for job rows."""

  async def create_job(self, record: JobRecord) -> str:
    """Insert a job and return its id; an existing idempotency key returns the stored id."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by id."""

  async def get_job_for_tenant(self, tenant_id: str, job_id: str) -> JobRecord | None:
    """Fetch a job by id within one tenant."""

  async def find_by_idempotency_key(self, idempotency_key: str) -> JobRecord | None:
    """Fetch a job by its idempotency key."""

  async def update_job(self, job_id: str, **fields: Any) -> JobRecord | None:
    """Apply a partial update and return the stored record."""

  async def list_by_parent(self, parent_job_id: str) -> list[JobRecord]:
    """List every child of a parent job."""

  async def next_queued(self) -> JobRecord | None:
    """Claim the oldest queued job and mark it running."""

  async def claim_job(self, job_id: str) -> JobRecord | None:
    """Atomically move one job from queued to running."""

  async def record_retry(self, job_id: str, error_message: str) -> JobRecord | None:
    """Increment the retry counter after a transient failure."""

  async def complete_job(self, job_id: str, *, result_path: str | None, tokens_used: int, progress_message: str | None = None) -> JobRecord | None:
    """Mark a running job completed."""

  async def fail_job(self, job_id: str, error_message: str) -> JobRecord | None:
    """Mark a non-terminal job failed; returns None when it was already terminal."""

  async def try_finalize_parent(self, parent_job_id: str) -> FinalizationResult:
    """Finalize a parent exactly once when all of its children are terminal."""

  async def list_stale(self, *, status: JobStatus, older_than: datetime, limit: int = 100) -> list[JobRecord]:
    """List non-parent jobs idling in a status since before a cutoff."""

  async def requeue_stale_running(self, job_id: str, *, older_than: datetime, error_message: str) -> JobRecord | None:
    """Put a running row started before the cutoff back to queued and count a retry; None when it moved on."""
