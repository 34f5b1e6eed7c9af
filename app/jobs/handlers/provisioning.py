"""Turns a paid signup into an identity, a tenant and its admin user."""

from __future__ import annotations

import logging

from app.jobs.errors import RetryableJobError, TerminalJobError, require_payload_str
from app.jobs.models import JobKind
from app.notifications.service import NotificationService
from app.queue.models import QueueMessage
from app.services.contracts import AccountStore, IdentityProvider
from app.storage.provisioning_repo import ProvisioningRepository, ProvisioningStatus

logger = logging.getLogger(__name__)


class AccountProvisioningHandler:
  """Idempotent provisioning keyed by the checkout session id.

  Every step looks up before it creates, so a redelivery after a partial run picks up the
  identity and tenant created the first time instead of duplicating them.
  """

  kind = JobKind.ACCOUNT_PROVISIONING

  def __init__(self, *, provisioning_repo: ProvisioningRepository, identity: IdentityProvider, accounts: AccountStore, notifications: NotificationService) -> None:
    self._provisioning_repo = provisioning_repo
    self._identity = identity
    self._accounts = accounts
    self._notifications = notifications

  async def run(self, message: QueueMessage) -> None:
    session_id = require_payload_str(message.payload, "checkout_session_id")
    registration = await self._provisioning_repo.get_by_session(session_id)
    if registration is None:
      logger.warning("No pending signup for checkout session %s", session_id)
      return
    if registration.status == "provisioned":
      logger.info("Checkout session %s already provisioned (tenant %s)", session_id, registration.tenant_id)
      return

    # A retry may take the row over from the failed or half-done state a previous attempt left.
    claimable: tuple[ProvisioningStatus, ...] = ("paid", "failed", "provisioning") if message.attempt > 0 else ("paid",)
    if registration.status not in claimable:
      logger.info("Checkout session %s is %s; nothing to provision", session_id, registration.status)
      return
    claimed = await self._provisioning_repo.claim_for_provisioning(session_id, from_statuses=claimable)
    if claimed is None:
      logger.info("Checkout session %s claimed elsewhere", session_id)
      return

    try:
      existing_identity = await self._identity.find_by_email(claimed.email)
      if existing_identity is not None:
        identity_id = existing_identity.identity_id
      else:
        identity_id = await self._identity.create_account(email=claimed.email, password_hash=claimed.password_hash, first_name=claimed.first_name, last_name=claimed.last_name)

      account = await self._accounts.find_by_identity(identity_id)
      if account is None:
        account = await self._accounts.create_account(claimed, identity_id)
      await self._provisioning_repo.mark_provisioned(session_id, tenant_id=account.tenant_id)
    except Exception as exc:
      await self._provisioning_repo.mark_failed(session_id, str(exc) or exc.__class__.__name__)
      if isinstance(exc, TerminalJobError):
        raise
      raise RetryableJobError(f"provisioning {session_id} failed: {exc}") from exc

    logger.info("Provisioned tenant %s (%s) for checkout session %s", account.tenant_id, account.tenant_slug, session_id)
    await self._notifications.notify_welcome(email=claimed.email, first_name=claimed.first_name, company_name=claimed.company_name)
