"""Periodic sweep that recovers paid signups and jobs stuck between queue and worker."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from app.config import Settings
from app.jobs.dispatch import JobFailureRecorder, redeliver
from app.jobs.models import JobKind, JobRecord
from app.notifications.service import NotificationService
from app.queue.interface import QueueClient
from app.storage.jobs_repo import JobsRepository
from app.storage.provisioning_repo import PendingProvisioningRecord, ProvisioningRepository

logger = logging.getLogger(__name__)

_SCAN_LIMIT = 200


@dataclass
class ReconcileReport:
  """Checkout sessions and job ids touched by one sweep."""

  requeued: list[str] = field(default_factory=list)
  resumed: list[str] = field(default_factory=list)
  warning: list[str] = field(default_factory=list)
  critical: list[str] = field(default_factory=list)
  stuck_jobs: list[str] = field(default_factory=list)
  requeued_jobs: list[str] = field(default_factory=list)
  failed_jobs: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReconcileThresholds:
  stuck_seconds: int
  warning_seconds: int
  critical_seconds: int
  job_stuck_seconds: int

  @classmethod
  def from_settings(cls, settings: Settings) -> ReconcileThresholds:
    return cls(
      stuck_seconds=settings.provisioning_stuck_seconds, warning_seconds=settings.provisioning_warning_seconds, critical_seconds=settings.provisioning_critical_seconds, job_stuck_seconds=settings.job_stuck_seconds
    )


class ProvisioningReconciler:
  """Re-enqueues stuck work and alerts ops.

  Signup rows keep their status; the provisioning handler moves them. A running job whose
  worker went away is put back to queued so any replica can claim it.
  """

  def __init__(
    self,
    *,
    provisioning_repo: ProvisioningRepository,
    jobs_repo: JobsRepository,
    queue: QueueClient,
    notifications: NotificationService,
    recorder: JobFailureRecorder,
    thresholds: ReconcileThresholds,
    clock: Callable[[], datetime] = lambda: datetime.now(UTC),
  ) -> None:
    self._provisioning_repo = provisioning_repo
    self._jobs_repo = jobs_repo
    self._queue = queue
    self._notifications = notifications
    self._recorder = recorder
    self._thresholds = thresholds
    self._clock = clock

  async def reconcile(self) -> ReconcileReport:
    now = self._clock()
    report = ReconcileReport()

    signup_cutoff = now - timedelta(seconds=self._thresholds.stuck_seconds)
    stuck_rows = await self._provisioning_repo.find_stuck_paid(older_than=signup_cutoff, limit=_SCAN_LIMIT)
    interrupted_rows = await self._provisioning_repo.find_stuck_provisioning(older_than=signup_cutoff, limit=_SCAN_LIMIT)
    warning_rows: list[PendingProvisioningRecord] = []
    critical_rows: list[PendingProvisioningRecord] = []
    for row in stuck_rows + interrupted_rows:
      age = _age_seconds(now, row.paid_at or row.created_at)
      if age >= self._thresholds.critical_seconds:
        critical_rows.append(row)
      elif age >= self._thresholds.warning_seconds:
        warning_rows.append(row)

    job_cutoff = now - timedelta(seconds=self._thresholds.job_stuck_seconds)
    stale_queued = await self._jobs_repo.list_stale(status="queued", older_than=job_cutoff, limit=_SCAN_LIMIT)
    stale_running = await self._jobs_repo.list_stale(status="running", older_than=job_cutoff, limit=_SCAN_LIMIT)

    report.warning = [row.checkout_session_id for row in warning_rows]
    report.critical = [row.checkout_session_id for row in critical_rows]
    report.stuck_jobs = [job.job_id for job in stale_running]

    # Alerts go out before re-enqueueing so a broken queue still pages someone.
    if warning_rows:
      await self._alert("ops_provisioning_delayed_v1", count=len(warning_rows), threshold_seconds=self._thresholds.warning_seconds, details=[_describe_row(row, now) for row in warning_rows])
    if critical_rows or stale_running:
      details = [_describe_row(row, now) for row in critical_rows] + [_describe_job(job, now) for job in stale_running]
      await self._alert("ops_orphaned_payments_v1", count=len(details), threshold_seconds=self._thresholds.critical_seconds, details=details)

    for row in stuck_rows:
      await self._queue.enqueue(JobKind.ACCOUNT_PROVISIONING, {"checkout_session_id": row.checkout_session_id})
      report.requeued.append(row.checkout_session_id)
    for row in interrupted_rows:
      # Sent as a retry so the handler may take over a row left in provisioning.
      await redeliver(self._queue, JobKind.ACCOUNT_PROVISIONING, {"checkout_session_id": row.checkout_session_id}, error="provisioning interrupted")
      report.resumed.append(row.checkout_session_id)
    for job in stale_queued:
      await self._queue.enqueue(job.job_kind, {"job_id": job.job_id})
      report.requeued_jobs.append(job.job_id)
    for job in stale_running:
      await self._recover_running(job, older_than=job_cutoff, now=now, report=report)

    if stuck_rows or interrupted_rows or stale_queued or stale_running:
      logger.warning(
        "Reconcile: requeued %d signups, resumed %d, requeued %d jobs, failed %d; warning=%d critical=%d stuck_running=%d",
        len(report.requeued),
        len(report.resumed),
        len(report.requeued_jobs),
        len(report.failed_jobs),
        len(report.warning),
        len(report.critical),
        len(report.stuck_jobs),
      )
    else:
      logger.debug("Reconcile: nothing stuck")
    return report

  async def _recover_running(self, job: JobRecord, *, older_than: datetime, now: datetime, report: ReconcileReport) -> None:
    """Hand a running row whose worker went away back to the queue, counted as a retry."""
    minutes = int(_age_seconds(now, job.started_at or job.updated_at) // 60)
    error = f"worker lost after {minutes} min"
    requeued = await self._jobs_repo.requeue_stale_running(job.job_id, older_than=older_than, error_message=error)
    if requeued is None:
      # It finished or was picked up again since the scan.
      return
    if requeued.retry_count >= requeued.max_retries:
      await self._recorder.fail(job.job_id, f"retries exhausted: {error}")
      report.failed_jobs.append(job.job_id)
      return
    await self._queue.enqueue(requeued.job_kind, {"job_id": requeued.job_id})
    report.requeued_jobs.append(job.job_id)

  async def _alert(self, template_id: str, *, count: int, threshold_seconds: int, details: list[str]) -> None:
    try:
      await self._notifications.send_ops_alert(template_id=template_id, placeholders={"count": count, "threshold_minutes": threshold_seconds // 60, "details": "\n".join(details)})
    except Exception as exc:  # noqa: BLE001
      logger.error("Ops alert %s failed: %s", template_id, exc, exc_info=True)


def _age_seconds(now: datetime, since: datetime | None) -> float:
  if since is None:
    return 0.0
  if since.tzinfo is None:
    since = since.replace(tzinfo=UTC)
  return (now - since).total_seconds()


def _describe_row(row: PendingProvisioningRecord, now: datetime) -> str:
  minutes = int(_age_seconds(now, row.paid_at or row.created_at) // 60)
  return f"- signup {row.checkout_session_id} ({row.email}, {row.company_name}) paid {minutes} min ago"


def _describe_job(job: JobRecord, now: datetime) -> str:
  minutes = int(_age_seconds(now, job.started_at or job.updated_at) // 60)
  return f"- job {job.job_id} ({job.job_kind.value}, tenant {job.tenant_id}) running for {minutes} min"
