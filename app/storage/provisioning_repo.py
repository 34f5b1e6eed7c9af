"""Repository contract for paid signups awaiting account creation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol

ProvisioningStatus = Literal["awaiting_payment", "paid", "provisioning", "provisioned", "failed"]


@dataclass
class PendingProvisioningRecord:
  """A checkout that has not yet become a tenant account."""

  id: str
  checkout_session_id: str
  email: str
  password_hash: str
  first_name: str
  last_name: str
  company_name: str
  plan: str
  expires_at: datetime
  industry: str | None = None
  team_size: str | None = None
  seat_count: int = 1
  status: ProvisioningStatus = "awaiting_payment"
  stripe_customer_id: str | None = None
  stripe_subscription_id: str | None = None
  error_message: str | None = None
  tenant_id: str | None = None
  created_at: datetime | None = None
  updated_at: datetime | None = None
  paid_at: datetime | None = None


class ProvisioningRepository(Protocol):
  """Persistence interface for pending provisioning rows."""

  async def create(self, record: PendingProvisioningRecord) -> None:
    """Insert a new pending row at checkout start."""

  async def get_by_session(self, checkout_session_id: str) -> PendingProvisioningRecord | None:
    """Fetch a row by its payment session reference."""

  async def mark_paid(self, checkout_session_id: str, *, customer_id: str | None, subscription_id: str | None) -> PendingProvisioningRecord | None:
    """Move an awaiting row to paid; other states are returned unchanged."""

  async def claim_for_provisioning(self, checkout_session_id: str, *, from_statuses: tuple[ProvisioningStatus, ...] = ("paid",)) -> PendingProvisioningRecord | None:
    """Atomically move a row in one of from_statuses to provisioning; None when no row matched."""

  async def mark_provisioned(self, checkout_session_id: str, *, tenant_id: str) -> None:
    """Record the successful account creation."""

  async def mark_failed(self, checkout_session_id: str, error_message: str) -> None:
    """Record a provisioning failure."""

  async def find_stuck_paid(self, *, older_than: datetime, limit: int = 100) -> list[PendingProvisioningRecord]:
    """List rows paid before the cutoff that no worker has claimed."""

  async def find_stuck_provisioning(self, *, older_than: datetime, limit: int = 100) -> list[PendingProvisioningRecord]:
    """List rows claimed for provisioning whose last write predates the cutoff."""

  async def delete_expired(self, *, now: datetime) -> int:
    """Purge expired rows that were never paid and return the count."""
