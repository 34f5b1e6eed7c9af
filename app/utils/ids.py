"""Identifier utilities."""

from __future__ import annotations

import re
import uuid

_SLUG_INVALID_RE = re.compile(r"[^a-z0-9]+")


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def generate_id() -> str:
  """Return a new row identifier."""
  return str(uuid.uuid4())


def generate_tenant_slug(company_name: str) -> str:
  """Return a URL-safe tenant slug: the slugified company name plus an 8-char suffix."""
  base = _SLUG_INVALID_RE.sub("-", company_name.strip().lower()).strip("-")[:40] or "tenant"
  return f"{base}-{uuid.uuid4().hex[:8]}"
