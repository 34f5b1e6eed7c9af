from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Job(Base):
  __tablename__ = "jobs"
  __table_args__ = (Index("ix_jobs_status_kind", "status", "job_kind"), Index("ix_jobs_parent_job_id", "parent_job_id"), Index("ix_jobs_tenant_id", "tenant_id"))

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  tenant_id: Mapped[str] = mapped_column(String, nullable=False)
  user_id: Mapped[str | None] = mapped_column(String, nullable=True)
  job_kind: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'queued'"))
  parent_job_id: Mapped[str | None] = mapped_column(ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=True)
  request_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
  progress_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  result_path: Mapped[str | None] = mapped_column(String, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
  retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
  max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default=text("3"))
  # Set on fan-out parents so finalization waits until every child row exists.
  expected_children: Mapped[int | None] = mapped_column(Integer, nullable=True)
  idempotency_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
