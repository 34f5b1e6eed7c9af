"""Shared FastAPI dependencies for gateway identity, internal auth and the runtime."""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from app.config import Settings, get_settings
from app.runtime import Runtime
from app.services.jobs import JobService

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> Runtime:
  runtime: Runtime | None = getattr(request.app.state, "runtime", None)
  if runtime is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up.")
  return runtime


def get_job_service(runtime: Annotated[Runtime, Depends(get_runtime)]) -> JobService:
  return runtime.job_service


def get_tenant_id(x_tenant_id: Annotated[str | None, Header()] = None) -> str:
  """Tenant scope forwarded by the authenticated gateway."""
  tenant_id = (x_tenant_id or "").strip()
  if not tenant_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing tenant context.")
  return tenant_id


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
  user_id = (x_user_id or "").strip()
  if not user_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user context.")
  return user_id


def require_task_secret(settings: Annotated[Settings, Depends(get_settings)], x_authorly_task_secret: Annotated[str | None, Header()] = None) -> None:
  """Guard internal endpoints with the shared task secret."""
  # Secure-by-default: internal endpoints are closed when no secret is configured.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  if not secrets.compare_digest(x_authorly_task_secret or "", settings.task_secret):
    logger.warning("Unauthorized access attempt to an internal endpoint")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")
