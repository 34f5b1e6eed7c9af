"""Subject-matter document ingestion handler."""

from __future__ import annotations

import logging

from app.events.publisher import EventPublisher, publish_job_event
from app.jobs.errors import TerminalJobError, require_payload_str
from app.jobs.handlers.base import JobHandlerBase
from app.jobs.models import JobKind, JobRecord
from app.notifications.service import NotificationService
from app.services.contracts import AIProvider, ObjectStorage, tenant_path
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class DocumentIngestionHandler(JobHandlerBase):
  kind = JobKind.DOCUMENT_INGESTION

  def __init__(self, *, jobs_repo: JobsRepository, publisher: EventPublisher, ai: AIProvider, storage: ObjectStorage, notifications: NotificationService) -> None:
    super().__init__(jobs_repo=jobs_repo, publisher=publisher)
    self._ai = ai
    self._storage = storage
    self._notifications = notifications

  async def execute(self, job: JobRecord) -> None:
    document_id = require_payload_str(job.request, "document_id")
    source_path = require_payload_str(job.request, "source_path")
    # Source documents live under the owning tenant's prefix only.
    if not source_path.startswith(tenant_path(job.tenant_id) + "/"):
      raise TerminalJobError(f"source_path is outside tenant {job.tenant_id}")

    text = await self._storage.read_text(source_path)
    if not text.strip():
      raise TerminalJobError(f"document {document_id} is empty")
    result = await self._ai.ingest_document(text)

    path = tenant_path(job.tenant_id, "documents", document_id, "ingestion.json")
    await self._storage.write_json(path, {"document_id": document_id, "summary": result.summary, "chunks": result.chunks})
    completed = await self._jobs_repo.complete_job(job.job_id, result_path=path, tokens_used=result.tokens_used, progress_message=f"Processed {len(result.chunks)} sections")
    if completed is None:
      logger.warning("Ingestion job %s left running state before completion", job.job_id)
      return

    logger.info("Ingested document %s into %d chunks", document_id, len(result.chunks))
    await publish_job_event(self._publisher, completed, "completed")
    await self._notifications.notify_job_ready(completed, placeholders={"chunk_count": len(result.chunks)})
