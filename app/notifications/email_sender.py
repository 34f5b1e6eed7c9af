"""Email delivery through MailerSend's HTTP API.

Sends are blocking and run on the threadpool, so the standard library client is enough here.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass

from app.notifications.contracts import EmailNotification, EmailSender, NotificationProviderError

logger = logging.getLogger(__name__)

# MailerSend caps tags per message.
_MAX_TAGS = 5


@dataclass(frozen=True)
class MailerSendConfig:
  api_key: str
  from_address: str
  from_name: str | None
  timeout_seconds: int
  base_url: str = "https://api.mailersend.com/v1"


def _build_payload(config: MailerSendConfig, notification: EmailNotification) -> dict[str, object]:
  sender: dict[str, str] = {"email": config.from_address}
  if config.from_name:
    sender["name"] = config.from_name
  recipient: dict[str, str] = {"email": notification.to_address}
  if notification.to_name:
    recipient["name"] = notification.to_name

  payload: dict[str, object] = {"from": sender, "to": [recipient], "subject": notification.subject, "text": notification.text, "html": notification.html}
  if notification.tags:
    payload["tags"] = list(notification.tags[:_MAX_TAGS])
  return payload


class MailerSendEmailSender(EmailSender):
  def __init__(self, *, config: MailerSendConfig) -> None:
    self._config = config

  def send(self, notification: EmailNotification) -> dict[str, str | None]:
    body = json.dumps(_build_payload(self._config, notification)).encode("utf-8")
    request = urllib.request.Request(
      url=f"{self._config.base_url.rstrip('/')}/email",
      data=body,
      method="POST",
      headers={"Authorization": f"Bearer {self._config.api_key}", "Content-Type": "application/json", "Accept": "application/json"},
    )

    try:
      with urllib.request.urlopen(request, timeout=self._config.timeout_seconds) as response:
        message_id = response.headers.get("X-Message-Id")
        logger.debug("MailerSend accepted email to=%s message_id=%s", notification.to_address, message_id)
        return {"provider": "mailersend", "message_id": message_id, "request_id": response.headers.get("X-Request-Id")}
    except urllib.error.HTTPError as exc:
      detail = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
      # 429 and 5xx clear up on their own; other 4xx mean the request itself is wrong.
      retryable = exc.code == 429 or exc.code >= 500
      logger.error("MailerSend rejected email status=%s retryable=%s body=%s", exc.code, retryable, detail[:500])
      raise NotificationProviderError(f"MailerSend returned {exc.code}", status_code=exc.code, retryable=retryable) from exc
    except urllib.error.URLError as exc:
      logger.error("MailerSend unreachable: %s", exc.reason)
      raise NotificationProviderError(f"MailerSend unreachable: {exc.reason}") from exc
    except TimeoutError as exc:
      raise NotificationProviderError(f"MailerSend timed out after {self._config.timeout_seconds}s") from exc


class NullEmailSender(EmailSender):
  """Drops every email; used while notifications are disabled."""

  def send(self, notification: EmailNotification) -> dict[str, str | None]:
    logger.debug("Email disabled; dropping %s to=%s", notification.subject, notification.to_address)
    return {"provider": None, "message_id": None, "request_id": None}
