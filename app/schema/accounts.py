from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Tenant(Base):
  __tablename__ = "tenants"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  industry: Mapped[str | None] = mapped_column(String, nullable=True)
  team_size: Mapped[str | None] = mapped_column(String, nullable=True)
  plan: Mapped[str] = mapped_column(String, nullable=False)
  seat_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
  stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
  stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TenantUser(Base):
  __tablename__ = "tenant_users"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
  identity_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  email: Mapped[str] = mapped_column(String, nullable=False, index=True)
  first_name: Mapped[str] = mapped_column(String, nullable=False)
  last_name: Mapped[str] = mapped_column(String, nullable=False)
  role: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'admin'"))
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
