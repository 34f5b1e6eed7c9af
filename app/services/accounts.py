"""Postgres-backed tenant account creation used by provisioning."""

from __future__ import annotations

from sqlalchemy import select

from app.core.database import get_session_factory
from app.schema.accounts import Tenant, TenantUser
from app.services.contracts import AccountStore, ProvisionedAccount, UserContact
from app.storage.provisioning_repo import PendingProvisioningRecord
from app.utils.ids import generate_id, generate_tenant_slug


class PostgresAccountStore(AccountStore):
  """Creates the tenant and its admin user in one transaction."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def find_by_identity(self, identity_id: str) -> ProvisionedAccount | None:
    async with self._session_factory() as session:
      stmt = select(TenantUser, Tenant.slug).join(Tenant, Tenant.id == TenantUser.tenant_id).where(TenantUser.identity_id == identity_id)
      row = (await session.execute(stmt)).first()
      if row is None:
        return None
      user, slug = row
      return ProvisionedAccount(tenant_id=user.tenant_id, user_id=user.id, tenant_slug=slug)

  async def get_user_contact(self, user_id: str) -> UserContact | None:
    async with self._session_factory() as session:
      user = await session.get(TenantUser, user_id)
      if user is None:
        return None
      return UserContact(email=user.email, first_name=user.first_name)

  async def create_account(self, registration: PendingProvisioningRecord, identity_id: str) -> ProvisionedAccount:
    tenant = Tenant(
      id=generate_id(),
      slug=generate_tenant_slug(registration.company_name),
      name=registration.company_name,
      industry=registration.industry,
      team_size=registration.team_size,
      plan=registration.plan,
      seat_count=registration.seat_count,
      stripe_customer_id=registration.stripe_customer_id,
      stripe_subscription_id=registration.stripe_subscription_id,
    )
    user = TenantUser(id=generate_id(), tenant_id=tenant.id, identity_id=identity_id, email=registration.email, first_name=registration.first_name, last_name=registration.last_name, role="admin")
    async with self._session_factory() as session:
      async with session.begin():
        session.add(tenant)
        await session.flush()
        session.add(user)
    return ProvisionedAccount(tenant_id=tenant.id, user_id=user.id, tenant_slug=tenant.slug)
