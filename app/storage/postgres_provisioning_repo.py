"""Postgres-backed repository for pending provisioning rows."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import delete, select, update

from app.core.database import get_session_factory
from app.schema.provisioning import PendingProvisioning
from app.storage.provisioning_repo import PendingProvisioningRecord, ProvisioningRepository, ProvisioningStatus


def _now() -> datetime:
  return datetime.now(UTC)


class PostgresProvisioningRepository(ProvisioningRepository):
  """Persist pending signups to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create(self, record: PendingProvisioningRecord) -> None:
    async with self._session_factory() as session:
      session.add(
        PendingProvisioning(
          id=record.id,
          checkout_session_id=record.checkout_session_id,
          email=record.email,
          password_hash=record.password_hash,
          first_name=record.first_name,
          last_name=record.last_name,
          company_name=record.company_name,
          industry=record.industry,
          team_size=record.team_size,
          plan=record.plan,
          seat_count=record.seat_count,
          status=record.status,
          expires_at=record.expires_at,
        )
      )
      await session.commit()

  async def get_by_session(self, checkout_session_id: str) -> PendingProvisioningRecord | None:
    async with self._session_factory() as session:
      stmt = select(PendingProvisioning).where(PendingProvisioning.checkout_session_id == checkout_session_id)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._model_to_record(row) if row is not None else None

  async def mark_paid(self, checkout_session_id: str, *, customer_id: str | None, subscription_id: str | None) -> PendingProvisioningRecord | None:
    now = _now()
    async with self._session_factory() as session:
      stmt = (
        update(PendingProvisioning)
        .where(PendingProvisioning.checkout_session_id == checkout_session_id, PendingProvisioning.status == "awaiting_payment")
        .values(status="paid", stripe_customer_id=customer_id, stripe_subscription_id=subscription_id, paid_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
      )
      await session.execute(stmt)
      await session.commit()
    # Webhooks are redelivered; a row already past awaiting_payment is returned as-is.
    return await self.get_by_session(checkout_session_id)

  async def claim_for_provisioning(self, checkout_session_id: str, *, from_statuses: tuple[ProvisioningStatus, ...] = ("paid",)) -> PendingProvisioningRecord | None:
    async with self._session_factory() as session:
      stmt = (
        update(PendingProvisioning)
        .where(PendingProvisioning.checkout_session_id == checkout_session_id, PendingProvisioning.status.in_(from_statuses))
        .values(status="provisioning", error_message=None, updated_at=_now())
        .returning(PendingProvisioning)
        .execution_options(synchronize_session=False)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      await session.commit()
      return self._model_to_record(row) if row is not None else None

  async def mark_provisioned(self, checkout_session_id: str, *, tenant_id: str) -> None:
    await self._set_status(checkout_session_id, status="provisioned", tenant_id=tenant_id, error_message=None)

  async def mark_failed(self, checkout_session_id: str, error_message: str) -> None:
    await self._set_status(checkout_session_id, status="failed", error_message=error_message)

  async def find_stuck_paid(self, *, older_than: datetime, limit: int = 100) -> list[PendingProvisioningRecord]:
    async with self._session_factory() as session:
      stmt = select(PendingProvisioning).where(PendingProvisioning.status == "paid", PendingProvisioning.paid_at < older_than).order_by(PendingProvisioning.paid_at.asc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def find_stuck_provisioning(self, *, older_than: datetime, limit: int = 100) -> list[PendingProvisioningRecord]:
    async with self._session_factory() as session:
      stmt = (
        select(PendingProvisioning)
        .where(PendingProvisioning.status == "provisioning", PendingProvisioning.updated_at < older_than)
        .order_by(PendingProvisioning.updated_at.asc())
        .limit(limit)
      )
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def delete_expired(self, *, now: datetime) -> int:
    async with self._session_factory() as session:
      stmt = delete(PendingProvisioning).where(PendingProvisioning.status == "awaiting_payment", PendingProvisioning.expires_at < now).execution_options(synchronize_session=False)
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def _set_status(self, checkout_session_id: str, **values: object) -> None:
    async with self._session_factory() as session:
      stmt = update(PendingProvisioning).where(PendingProvisioning.checkout_session_id == checkout_session_id).values(updated_at=_now(), **values).execution_options(synchronize_session=False)
      await session.execute(stmt)
      await session.commit()

  def _model_to_record(self, row: PendingProvisioning) -> PendingProvisioningRecord:
    return PendingProvisioningRecord(
      id=row.id,
      checkout_session_id=row.checkout_session_id,
      email=row.email,
      password_hash=row.password_hash,
      first_name=row.first_name,
      last_name=row.last_name,
      company_name=row.company_name,
      plan=row.plan,
      expires_at=row.expires_at,
      industry=row.industry,
      team_size=row.team_size,
      seat_count=row.seat_count,
      status=row.status,
      stripe_customer_id=row.stripe_customer_id,
      stripe_subscription_id=row.stripe_subscription_id,
      error_message=row.error_message,
      tenant_id=row.tenant_id,
      created_at=row.created_at,
      updated_at=row.updated_at,
      paid_at=row.paid_at,
    )
