"""Contracts for the external collaborators the job handlers depend on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from app.storage.provisioning_repo import PendingProvisioningRecord


@dataclass(frozen=True)
class OutlineResult:
  """Course structure: sections, each with a title and a list of lesson titles."""

  sections: list[dict[str, Any]]
  tokens_used: int


@dataclass(frozen=True)
class LessonResult:
  components: list[dict[str, Any]]
  tokens_used: int


@dataclass(frozen=True)
class IngestionResult:
  summary: str
  chunks: list[str]
  tokens_used: int


@dataclass(frozen=True)
class ProvisionedAccount:
  tenant_id: str
  user_id: str
  tenant_slug: str


@dataclass(frozen=True)
class UserContact:
  email: str
  first_name: str | None = None


@dataclass(frozen=True)
class IdentityAccount:
  identity_id: str
  email: str
  metadata: dict[str, str] = field(default_factory=dict)


class AIProvider(Protocol):
  """Opaque content generation provider; any raised error is treated as transient."""

  async def generate_outline(self, request: dict[str, Any]) -> OutlineResult:
    """Produce a course outline."""

  async def generate_lesson_content(self, request: dict[str, Any]) -> LessonResult:
    """Produce the components of one lesson."""

  async def ingest_document(self, text: str) -> IngestionResult:
    """Summarize and chunk a subject-matter document."""


class IdentityProvider(Protocol):
  """External identity store that owns login credentials."""

  async def find_by_email(self, email: str) -> IdentityAccount | None:
    """Return the identity registered for an email, if any."""

  async def create_account(self, *, email: str, password_hash: str, first_name: str, last_name: str) -> str:
    """Create a login identity from a pre-hashed password and return its id."""


class AccountStore(Protocol):
  """Tenant and admin-user rows created by provisioning."""

  async def find_by_identity(self, identity_id: str) -> ProvisionedAccount | None:
    """Return the account already provisioned for an identity."""

  async def create_account(self, registration: PendingProvisioningRecord, identity_id: str) -> ProvisionedAccount:
    """Create the tenant, its company profile and the admin user."""

  async def get_user_contact(self, user_id: str) -> UserContact | None:
    """Return where notifications for a user are delivered."""


class ObjectStorage(Protocol):
  """JSON blob store addressed by tenant-scoped paths."""

  async def read_json(self, path: str) -> dict[str, Any]:
    """Read and decode a JSON object."""

  async def write_json(self, path: str, data: dict[str, Any]) -> None:
    """Encode and write a JSON object."""

  async def read_text(self, path: str) -> str:
    """Read a UTF-8 text object."""

  async def presigned_url(self, path: str, *, ttl_seconds: int = 900) -> str:
    """Return a time-limited download URL."""


def tenant_path(tenant_id: str, *parts: str) -> str:
  """Build a deterministic object path under a tenant prefix."""
  if not tenant_id or "/" in tenant_id:
    raise ValueError("tenant_id must be a non-empty path segment")
  cleaned = [part.strip("/") for part in parts if part and part.strip("/")]
  return "/".join(["tenants", tenant_id, *cleaned])
