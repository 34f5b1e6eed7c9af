"""Two-case failure classification returned by job handlers."""

from __future__ import annotations

from typing import Literal

from app.utils.db_retry import classify_db_failure

FailureClass = Literal["retryable", "terminal"]


class JobError(Exception):
  """Base class for failures raised by job handlers."""


class RetryableJobError(JobError):
  """Transient failure; the queue redelivers with backoff."""


class TerminalJobError(JobError):
  """Unrecoverable failure (malformed payload, invalid input); never redelivered."""


def classify_failure(exc: BaseException) -> FailureClass:
  """Map a handler exception to the queue's retry or no-retry behavior."""
  if isinstance(exc, TerminalJobError):
    return "terminal"
  if isinstance(exc, RetryableJobError):
    return "retryable"
  if isinstance(exc, Exception):
    classification = classify_db_failure(exc)
    # Only database failures with a known permanent cause short-circuit retries.
    if not classification.retryable and classification.category in {"integrity_error", "schema_error", "permission_error"}:
      return "terminal"
  return "retryable"


def require_payload_str(payload: dict, key: str) -> str:
  """Return a required identifier from a message payload or raise a terminal error."""
  value = payload.get(key)
  if not isinstance(value, str) or not value.strip():
    raise TerminalJobError(f"malformed payload: missing {key}")
  return value.strip()
