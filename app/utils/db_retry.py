"""Database failure classification and bounded retry for short transactional operations."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE classes that will fail the same way on every attempt.
_PERMANENT_CLASSES = {"23": "integrity_error", "42": "schema_error", "28": "permission_error"}
_CONNECTIVITY_PATTERNS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a database failure."""

  retryable: bool
  reason: str
  sqlstate: str | None
  category: str


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy exception."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    for attribute in ("sqlstate", "pgcode"):
      value = getattr(exc.orig, attribute, None)
      if value:
        return str(value)
  return None


def classify_db_failure(exc: Exception) -> DBFailureClassification:
  """
  Classify a database failure as retryable or not.

  Retryable: 40001 serialization failure, 40P01 deadlock, dropped connections.
  Permanent: integrity (23xxx), schema (42xxx) and permission (28xxx) errors.
  Everything else is treated as non-retryable for the DB retry loop.
  """
  sqlstate = _extract_sqlstate(exc)

  if sqlstate == "40001":
    return DBFailureClassification(retryable=True, reason="Serialization failure", sqlstate=sqlstate, category="serialization_conflict")
  if sqlstate == "40P01":
    return DBFailureClassification(retryable=True, reason="Deadlock detected", sqlstate=sqlstate, category="deadlock")
  if sqlstate and sqlstate[:2] in _PERMANENT_CLASSES:
    category = _PERMANENT_CLASSES[sqlstate[:2]]
    return DBFailureClassification(retryable=False, reason=f"Permanent database error ({category})", sqlstate=sqlstate, category=category)

  if isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation", sqlstate=sqlstate, category="integrity_error")

  if isinstance(exc, OperationalError):
    message = str(exc).lower()
    if any(pattern in message for pattern in _CONNECTIVITY_PATTERNS):
      return DBFailureClassification(retryable=True, reason="Transient connection error", sqlstate=sqlstate, category="connectivity_error")
    return DBFailureClassification(retryable=False, reason="Operational error (unknown cause)", sqlstate=sqlstate, category="operational_error_unknown")

  return DBFailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")


async def run_with_db_retry(func: Callable[[], Awaitable[T]], *, operation_name: str, max_attempts: int = 3, initial_backoff_ms: float = 50, max_backoff_ms: float = 1000) -> T:
  """Run a DB operation, retrying only serialization, deadlock and connectivity failures."""
  attempt = 0
  while True:
    attempt += 1
    try:
      return await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      if not classification.retryable or attempt >= max_attempts:
        raise
      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      backoff_ms += random.uniform(0, backoff_ms * 0.25)
      logger.info("Retrying DB operation=%s attempt=%d/%d category=%s backoff_ms=%.1f", operation_name, attempt, max_attempts, classification.category, backoff_ms)
      await asyncio.sleep(backoff_ms / 1000.0)
