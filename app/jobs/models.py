"""Domain models for background jobs and their fan-in results."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

JobStatus = Literal["queued", "running", "completed", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class JobKind(StrEnum):
  """Closed set of units of work the worker knows how to run."""

  COURSE_OUTLINE = "course_outline"
  LESSON_CONTENT = "lesson_content"
  FULL_COURSE = "full_course"
  DOCUMENT_INGESTION = "document_ingestion"
  ACCOUNT_PROVISIONING = "account_provisioning"
  PROVISIONING_RECONCILE = "provisioning_reconcile"
  EXPIRED_CLEANUP = "expired_cleanup"
  QUEUED_POLL = "queued_poll"


# Kinds tracked as rows in the jobs table; the rest are queue-only tasks.
JOB_ROW_KINDS: frozenset[JobKind] = frozenset({JobKind.COURSE_OUTLINE, JobKind.LESSON_CONTENT, JobKind.FULL_COURSE, JobKind.DOCUMENT_INGESTION})

# Parents are finalized by aggregation and never executed by a handler.
PARENT_KINDS: frozenset[JobKind] = frozenset({JobKind.FULL_COURSE})

# Kinds callers may submit through the public enqueue surface.
CLIENT_KINDS: frozenset[JobKind] = frozenset({JobKind.COURSE_OUTLINE, JobKind.LESSON_CONTENT, JobKind.FULL_COURSE, JobKind.DOCUMENT_INGESTION})

DEFAULT_MAX_RETRIES: dict[JobKind, int] = {JobKind.COURSE_OUTLINE: 3, JobKind.LESSON_CONTENT: 3, JobKind.DOCUMENT_INGESTION: 3, JobKind.FULL_COURSE: 0}


@dataclass
class JobRecord:
  """Represents one tracked unit of background work."""

  job_id: str
  tenant_id: str
  job_kind: JobKind
  status: JobStatus
  request: dict[str, Any]
  user_id: str | None = None
  parent_job_id: str | None = None
  progress: int = 0
  progress_message: str | None = None
  result_path: str | None = None
  error_message: str | None = None
  tokens_used: int = 0
  retry_count: int = 0
  max_retries: int = 3
  expected_children: int | None = None
  idempotency_key: str | None = None
  created_at: datetime | None = None
  updated_at: datetime | None = None
  started_at: datetime | None = None
  completed_at: datetime | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES

  @property
  def is_parent(self) -> bool:
    return self.job_kind in PARENT_KINDS


@dataclass(frozen=True)
class ChildStats:
  """Aggregate counts over a parent's children."""

  total: int
  completed: int
  failed: int
  pending: int
  tokens_used: int

  @property
  def done(self) -> int:
    return self.completed + self.failed


@dataclass(frozen=True)
class FinalizationResult:
  """Outcome of one attempt to finalize a parent job."""

  was_finalized: bool
  all_complete: bool
  parent_status: JobStatus
  total: int
  completed: int
  failed: int
  pending: int
  tokens_used: int

  @classmethod
  def from_stats(cls, stats: ChildStats, *, was_finalized: bool, all_complete: bool, parent_status: JobStatus) -> FinalizationResult:
    return cls(
      was_finalized=was_finalized, all_complete=all_complete, parent_status=parent_status, total=stats.total, completed=stats.completed, failed=stats.failed, pending=stats.pending, tokens_used=stats.tokens_used
    )


def children_outstanding(stats: ChildStats, expected: int | None) -> bool:
  """True while a child is unsettled or a fan-out has not inserted every child yet."""
  return stats.pending > 0 or stats.total < (expected or 0)


def parent_progress(stats: ChildStats, expected: int | None = None) -> tuple[int, str]:
  """Return the in-flight progress percent and message for a parent."""
  total = max(stats.total, expected or 0)
  if total == 0:
    return 100, "No lessons to generate."
  percent = 10 + (90 * stats.done) // total
  return percent, f"Generated {stats.done} of {total} lessons..."


def parent_failure_message(failed: int) -> str:
  return f"{failed} lesson(s) failed to generate"
