"""Notification orchestration for job and provisioning events."""

from __future__ import annotations

import logging
from typing import Any

from starlette.concurrency import run_in_threadpool

from app.jobs.models import JobKind, JobRecord
from app.notifications.contracts import EmailNotification, EmailSender, NotificationProviderError
from app.notifications.template_renderer import render_email_template
from app.services.contracts import AccountStore

logger = logging.getLogger(__name__)

_READY_TEMPLATES: dict[JobKind, str] = {JobKind.COURSE_OUTLINE: "outline_ready_v1", JobKind.LESSON_CONTENT: "lesson_ready_v1", JobKind.DOCUMENT_INGESTION: "ingestion_complete_v1"}


class NotificationService:
  """Sends user emails on a best-effort basis and ops alerts on demand."""

  def __init__(self, *, email_sender: EmailSender, account_store: AccountStore | None, email_enabled: bool, ops_alert_email: str | None, app_base_url: str) -> None:
    self._email_sender = email_sender
    self._account_store = account_store
    self._email_enabled = email_enabled
    self._ops_alert_email = ops_alert_email
    self._app_base_url = app_base_url

  async def send_email_template(self, *, to_address: str, to_name: str | None, template_id: str, placeholders: dict[str, Any]) -> bool:
    """Send a templated email; delivery failures are logged and never raised."""
    # Avoid sending notifications when the feature is not configured.
    if not self._email_enabled:
      return False

    try:
      await self._deliver(to_address=to_address, to_name=to_name, template_id=template_id, placeholders=placeholders)
    except NotificationProviderError as exc:
      logger.error("Email %s delivery failed (provider error, retryable=%s): %s", template_id, exc.retryable, exc)
      return False
    except Exception as exc:  # noqa: BLE001
      logger.error("Email notification delivery failed: %s", exc, exc_info=True)
      return False
    return True

  async def notify_job_ready(self, job: JobRecord, *, placeholders: dict[str, Any] | None = None) -> None:
    """Tell the requesting user a standalone job has finished."""
    template_id = _READY_TEMPLATES.get(job.job_kind)
    if template_id is None:
      logger.debug("No ready template for job kind %s", job.job_kind)
      return
    await self._notify_user(job, template_id=template_id, placeholders=placeholders or {})

  async def notify_course_finished(self, parent: JobRecord, *, lesson_count: int) -> None:
    """Tell the requesting user a fanned-out course reached its final state."""
    if parent.status == "failed":
      await self._notify_user(parent, template_id="course_failed_v1", placeholders={"error": (parent.error_message or "some lessons failed").lower()})
      return
    await self._notify_user(parent, template_id="course_complete_v1", placeholders={"lesson_count": lesson_count})

  async def notify_welcome(self, *, email: str, first_name: str | None, company_name: str) -> None:
    greeting = f"Hi {first_name}," if first_name else "Hi,"
    await self.send_email_template(to_address=email, to_name=first_name, template_id="welcome_v1", placeholders={"greeting": greeting, "company_name": company_name, "link": f"{self._app_base_url}/login"})

  async def send_ops_alert(self, *, template_id: str, placeholders: dict[str, Any]) -> None:
    """Deliver an ops alert; raises when delivery fails so callers can decide."""
    if not self._email_enabled or not self._ops_alert_email:
      logger.warning("Ops alert %s not delivered (no alert address configured): %s", template_id, placeholders.get("count"))
      return
    await self._deliver(to_address=self._ops_alert_email, to_name=None, template_id=template_id, placeholders=placeholders)

  async def _notify_user(self, job: JobRecord, *, template_id: str, placeholders: dict[str, Any]) -> None:
    if not self._email_enabled or not job.user_id or self._account_store is None:
      return

    try:
      contact = await self._account_store.get_user_contact(job.user_id)
    except Exception as exc:  # noqa: BLE001
      logger.error("Recipient lookup failed for job %s: %s", job.job_id, exc, exc_info=True)
      return
    if contact is None:
      logger.warning("No contact for user %s; skipping %s email", job.user_id, template_id)
      return

    greeting = f"Hi {contact.first_name}," if contact.first_name else "Hi,"
    merged = {"greeting": greeting, "link": f"{self._app_base_url}/jobs/{job.job_id}", **placeholders}
    await self.send_email_template(to_address=contact.email, to_name=contact.first_name, template_id=template_id, placeholders=merged)

  async def _deliver(self, *, to_address: str, to_name: str | None, template_id: str, placeholders: dict[str, Any]) -> None:
    subject, text_body, html_body = render_email_template(template_id=template_id, placeholders=placeholders)
    notification = EmailNotification(to_address=to_address, to_name=to_name, subject=subject, text=text_body, html=html_body, tags=(template_id,))
    result = await run_in_threadpool(self._email_sender.send, notification)
    logger.info("Sent %s email provider=%s message_id=%s", template_id, result.get("provider"), result.get("message_id"))
