from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class PendingProvisioning(Base):
  __tablename__ = "pending_provisioning"
  __table_args__ = (Index("ix_pending_provisioning_status_paid_at", "status", "paid_at"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  checkout_session_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  email: Mapped[str] = mapped_column(String, nullable=False)
  password_hash: Mapped[str] = mapped_column(String, nullable=False)
  first_name: Mapped[str] = mapped_column(String, nullable=False)
  last_name: Mapped[str] = mapped_column(String, nullable=False)
  company_name: Mapped[str] = mapped_column(String, nullable=False)
  industry: Mapped[str | None] = mapped_column(String, nullable=True)
  team_size: Mapped[str | None] = mapped_column(String, nullable=True)
  plan: Mapped[str] = mapped_column(String, nullable=False)
  seat_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
  status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'awaiting_payment'"))
  stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
  stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
  paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
