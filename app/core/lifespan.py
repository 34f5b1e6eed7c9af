import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from app.config import get_settings
from app.core.logging import _initialize_logging
from app.runtime import build_runtime, close_runtime


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging, build the runtime and run the in-process worker and scheduler when enabled."""
  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  _initialize_logging(settings)
  logger.info("Starting Authorly jobs env=%s queue=%s pg=%s", settings.environment, settings.queue_provider, _redact_dsn(settings.pg_dsn))

  runtime = build_runtime(settings)
  # Storage is best-effort at startup; handlers surface real failures per job.
  ensure_bucket = getattr(runtime.storage, "ensure_bucket", None)
  if ensure_bucket is not None:
    try:
      await ensure_bucket()
    except Exception as exc:  # noqa: BLE001
      logger.warning("Failed to ensure storage bucket at startup: %s", exc)

  app.state.runtime = runtime
  await runtime.start(worker=settings.worker_enabled, scheduler=settings.scheduler_enabled)
  try:
    yield
  finally:
    app.state.runtime = None
    await close_runtime(runtime)
    logger.info("Shutdown complete.")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
