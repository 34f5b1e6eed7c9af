from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

from app.jobs.models import JobRecord, JobStatus


class JobCreateRequest(BaseModel):
  """Request payload for enqueueing a background job."""

  kind: StrictStr
  payload: dict[str, Any] = Field(default_factory=dict, description="Identifiers the job needs; never content snapshots.")
  idempotency_key: StrictStr | None = Field(default=None, max_length=200)
  model_config = ConfigDict(extra="forbid")


class JobCreateResponse(BaseModel):
  job_id: StrictStr
  status: JobStatus


class ChildJobStatus(BaseModel):
  job_id: StrictStr
  status: JobStatus
  progress: StrictInt


class JobStatusResponse(BaseModel):
  """Status payload for a background job; internals such as retry counts stay server-side."""

  job_id: StrictStr
  kind: StrictStr
  status: JobStatus
  progress: StrictInt = Field(ge=0, le=100)
  progress_message: StrictStr | None = None
  result_path: StrictStr | None = None
  error_message: StrictStr | None = None
  tokens_used: StrictInt = 0
  parent_job_id: StrictStr | None = None
  child_jobs: list[ChildJobStatus] | None = None
  created_at: datetime | None = None
  completed_at: datetime | None = None

  @classmethod
  def from_record(cls, job: JobRecord, children: list[JobRecord] | None = None) -> JobStatusResponse:
    return cls(
      job_id=job.job_id,
      kind=job.job_kind.value,
      status=job.status,
      progress=job.progress,
      progress_message=job.progress_message,
      result_path=job.result_path,
      error_message=job.error_message,
      tokens_used=job.tokens_used,
      parent_job_id=job.parent_job_id,
      child_jobs=[ChildJobStatus(job_id=child.job_id, status=child.status, progress=child.progress) for child in children] if children else None,
      created_at=job.created_at,
      completed_at=job.completed_at,
    )


class PendingSignupRequest(BaseModel):
  """Signup captured at checkout start; the password arrives already bcrypt-hashed."""

  checkout_session_id: StrictStr = Field(min_length=1)
  email: StrictStr = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=320)
  password_hash: StrictStr = Field(min_length=20)
  first_name: StrictStr = Field(min_length=1, max_length=100)
  last_name: StrictStr = Field(min_length=1, max_length=100)
  company_name: StrictStr = Field(min_length=1, max_length=200)
  industry: StrictStr | None = None
  team_size: StrictStr | None = None
  plan: StrictStr = Field(min_length=1)
  seat_count: StrictInt = Field(default=1, ge=1)
  model_config = ConfigDict(extra="forbid")


class PendingSignupResponse(BaseModel):
  checkout_session_id: StrictStr
  status: StrictStr
  expires_at: datetime


class PaymentWebhookRequest(BaseModel):
  session_id: StrictStr = Field(min_length=1)
  customer_id: StrictStr | None = None
  subscription_id: StrictStr | None = None
  status: StrictStr


class PaymentWebhookResponse(BaseModel):
  session_id: StrictStr
  status: StrictStr
