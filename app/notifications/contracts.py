"""Contracts for email delivery used by job and provisioning notifications."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class EmailNotification:
  """A rendered email ready for the provider."""

  to_address: str
  to_name: str | None
  subject: str
  text: str
  html: str
  # Provider-side tags (template id, job kind) for filtering delivery analytics.
  tags: tuple[str, ...] = ()


class NotificationError(Exception):
  """Base class for all notification delivery failures."""


class NotificationProviderError(NotificationError):
  """The email provider rejected or could not accept a delivery."""

  def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.retryable = retryable


class EmailSender(Protocol):
  def send(self, notification: EmailNotification) -> dict[str, str | None]:
    """Send synchronously and return provider identifiers; callers run this off the event loop."""
