"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Authorly job orchestration service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  redis_url: str | None
  queue_provider: str
  queue_heartbeat_ttl_seconds: float
  worker_enabled: bool
  worker_concurrency: int
  worker_dequeue_timeout_seconds: float
  scheduler_enabled: bool
  scheduler_tick_seconds: float
  poll_interval_seconds: int
  poll_batch_size: int
  reconcile_interval_seconds: int
  cleanup_interval_seconds: int
  provisioning_stuck_seconds: int
  provisioning_warning_seconds: int
  provisioning_critical_seconds: int
  job_stuck_seconds: int
  pending_provisioning_ttl_seconds: int
  retry_base_seconds: float
  retry_max_seconds: float
  storage_bucket: str
  gcs_storage_host: str | None
  gcp_project_id: str | None
  ai_service_url: str | None
  ai_service_api_key: str | None
  ai_timeout_seconds: int
  firebase_project_id: str | None
  firebase_service_account_json_path: str | None
  email_notifications_enabled: bool
  email_from_address: str | None
  email_from_name: str | None
  mailersend_api_key: str | None
  mailersend_timeout_seconds: int
  mailersend_base_url: str
  ops_alert_email: str | None
  app_base_url: str
  task_secret: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  pg_pool_size: int
  pg_max_overflow: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("AUTHORLY_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("AUTHORLY_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("AUTHORLY_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("AUTHORLY_ENV", "development").lower()

  # Toggle verbose error output and SQL echo in non-production environments.
  debug = _parse_bool(os.getenv("AUTHORLY_DEBUG"))

  log_max_bytes = _parse_positive_int("AUTHORLY_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("AUTHORLY_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("AUTHORLY_LOG_BACKUP_COUNT must be zero or a positive integer.")

  queue_provider = (os.getenv("AUTHORLY_QUEUE_PROVIDER") or "redis").strip().lower()
  if queue_provider not in {"redis", "memory"}:
    raise ValueError("AUTHORLY_QUEUE_PROVIDER must be 'redis' or 'memory'.")

  redis_url = _optional_str(os.getenv("AUTHORLY_REDIS_URL") or os.getenv("REDIS_URL"))
  if queue_provider == "redis" and not redis_url:
    raise ValueError("AUTHORLY_REDIS_URL must be set when the redis queue provider is used.")

  # Graduated thresholds must stay ordered so the reconciler buckets never overlap.
  provisioning_stuck_seconds = _parse_positive_int("AUTHORLY_PROVISIONING_STUCK_SECONDS", "300")
  provisioning_warning_seconds = _parse_positive_int("AUTHORLY_PROVISIONING_WARNING_SECONDS", "900")
  provisioning_critical_seconds = _parse_positive_int("AUTHORLY_PROVISIONING_CRITICAL_SECONDS", "1800")
  if not provisioning_stuck_seconds <= provisioning_warning_seconds < provisioning_critical_seconds:
    raise ValueError("Provisioning thresholds must satisfy stuck <= warning < critical.")

  retry_base_seconds = _parse_positive_float("AUTHORLY_RETRY_BASE_SECONDS", "10")
  retry_max_seconds = _parse_positive_float("AUTHORLY_RETRY_MAX_SECONDS", "600")
  if retry_max_seconds < retry_base_seconds:
    raise ValueError("AUTHORLY_RETRY_MAX_SECONDS must be >= AUTHORLY_RETRY_BASE_SECONDS.")

  email_notifications_enabled = _parse_bool(os.getenv("AUTHORLY_EMAIL_NOTIFICATIONS_ENABLED"))
  email_from_address = _optional_str(os.getenv("AUTHORLY_EMAIL_FROM_ADDRESS"))
  mailersend_api_key = _optional_str(os.getenv("AUTHORLY_MAILERSEND_API_KEY"))
  mailersend_timeout_seconds = int(os.getenv("AUTHORLY_MAILERSEND_TIMEOUT_SECONDS", "10"))

  # Validate notification settings only when notifications are enabled.
  if email_notifications_enabled:
    if not email_from_address:
      raise ValueError("AUTHORLY_EMAIL_FROM_ADDRESS must be set when email notifications are enabled.")

    if not mailersend_api_key:
      raise ValueError("AUTHORLY_MAILERSEND_API_KEY must be set when email notifications are enabled.")

    if mailersend_timeout_seconds <= 0:
      raise ValueError("AUTHORLY_MAILERSEND_TIMEOUT_SECONDS must be a positive integer.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("AUTHORLY_ALLOWED_ORIGINS")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("AUTHORLY_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("AUTHORLY_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_parse_positive_int("AUTHORLY_PG_CONNECT_TIMEOUT", "5"),
    redis_url=redis_url,
    queue_provider=queue_provider,
    queue_heartbeat_ttl_seconds=_parse_positive_float("AUTHORLY_QUEUE_HEARTBEAT_TTL_SECONDS", "30"),
    worker_enabled=_parse_bool(os.getenv("AUTHORLY_WORKER_ENABLED")),
    worker_concurrency=_parse_positive_int("AUTHORLY_WORKER_CONCURRENCY", "10"),
    worker_dequeue_timeout_seconds=_parse_positive_float("AUTHORLY_WORKER_DEQUEUE_TIMEOUT_SECONDS", "1"),
    scheduler_enabled=_parse_bool(os.getenv("AUTHORLY_SCHEDULER_ENABLED")),
    scheduler_tick_seconds=_parse_positive_float("AUTHORLY_SCHEDULER_TICK_SECONDS", "1"),
    poll_interval_seconds=_parse_positive_int("AUTHORLY_POLL_INTERVAL_SECONDS", "5"),
    poll_batch_size=_parse_positive_int("AUTHORLY_POLL_BATCH_SIZE", "5"),
    reconcile_interval_seconds=_parse_positive_int("AUTHORLY_RECONCILE_INTERVAL_SECONDS", "900"),
    cleanup_interval_seconds=_parse_positive_int("AUTHORLY_CLEANUP_INTERVAL_SECONDS", "3600"),
    provisioning_stuck_seconds=provisioning_stuck_seconds,
    provisioning_warning_seconds=provisioning_warning_seconds,
    provisioning_critical_seconds=provisioning_critical_seconds,
    job_stuck_seconds=_parse_positive_int("AUTHORLY_JOB_STUCK_SECONDS", "1800"),
    pending_provisioning_ttl_seconds=_parse_positive_int("AUTHORLY_PENDING_PROVISIONING_TTL_SECONDS", "86400"),
    retry_base_seconds=retry_base_seconds,
    retry_max_seconds=retry_max_seconds,
    storage_bucket=os.getenv("AUTHORLY_STORAGE_BUCKET", "authorly-content"),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    ai_service_url=_optional_str(os.getenv("AUTHORLY_AI_SERVICE_URL")),
    ai_service_api_key=_optional_str(os.getenv("AUTHORLY_AI_SERVICE_API_KEY")),
    ai_timeout_seconds=_parse_positive_int("AUTHORLY_AI_TIMEOUT_SECONDS", "300"),
    firebase_project_id=_optional_str(os.getenv("FIREBASE_PROJECT_ID")),
    firebase_service_account_json_path=_optional_str(os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH")),
    email_notifications_enabled=email_notifications_enabled,
    email_from_address=email_from_address,
    email_from_name=_optional_str(os.getenv("AUTHORLY_EMAIL_FROM_NAME")),
    mailersend_api_key=mailersend_api_key,
    mailersend_timeout_seconds=mailersend_timeout_seconds,
    mailersend_base_url=(os.getenv("AUTHORLY_MAILERSEND_BASE_URL") or "https://api.mailersend.com/v1").strip(),
    ops_alert_email=_optional_str(os.getenv("AUTHORLY_OPS_ALERT_EMAIL")),
    app_base_url=(os.getenv("AUTHORLY_APP_BASE_URL") or "http://localhost:5173").strip().rstrip("/"),
    task_secret=_optional_str(os.getenv("AUTHORLY_TASK_SECRET")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so migrations and offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("AUTHORLY_DEBUG"))
  pg_connect_timeout = int(os.getenv("AUTHORLY_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("AUTHORLY_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("AUTHORLY_PG_DSN") or os.getenv("DATABASE_URL")
  pg_max_overflow = int(os.getenv("AUTHORLY_PG_MAX_OVERFLOW", "10"))
  if pg_max_overflow < 0:
    raise ValueError("AUTHORLY_PG_MAX_OVERFLOW must not be negative.")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout, pg_pool_size=_parse_positive_int("AUTHORLY_PG_POOL_SIZE", "5"), pg_max_overflow=pg_max_overflow)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
