"""Firebase-backed identity provider for provisioned admin users."""

from __future__ import annotations

import logging
import uuid

from firebase_admin import auth
from starlette.concurrency import run_in_threadpool

from app.jobs.errors import RetryableJobError
from app.services.contracts import IdentityAccount, IdentityProvider

logger = logging.getLogger(__name__)


class FirebaseIdentityProvider(IdentityProvider):
  """Creates login identities from bcrypt hashes captured at signup."""

  async def find_by_email(self, email: str) -> IdentityAccount | None:
    def _lookup() -> IdentityAccount | None:
      try:
        user = auth.get_user_by_email(email)
      except auth.UserNotFoundError:
        return None
      return IdentityAccount(identity_id=user.uid, email=user.email or email)

    return await run_in_threadpool(_lookup)

  async def create_account(self, *, email: str, password_hash: str, first_name: str, last_name: str) -> str:
    uid = str(uuid.uuid4())
    record = auth.ImportUserRecord(uid=uid, email=email, display_name=f"{first_name} {last_name}".strip(), email_verified=True, password_hash=password_hash.encode("utf-8"))

    # Importing keeps the password hash intact; the plaintext never reaches this service.
    result = await run_in_threadpool(auth.import_users, [record], hash_alg=auth.UserImportHash.bcrypt())
    if result.failure_count:
      reason = result.errors[0].reason if result.errors else "unknown"
      # A concurrent import of the same email surfaces here; the retry finds it by email.
      logger.error("Identity import failed email=%s reason=%s", email, reason)
      raise RetryableJobError(f"identity import failed: {reason}")

    logger.info("Created identity uid=%s for %s", uid, email)
    return uid
