"""Builds the notification service for the API and worker processes."""

from __future__ import annotations

import logging

from app.config import Settings
from app.notifications.contracts import EmailSender
from app.notifications.email_sender import MailerSendConfig, MailerSendEmailSender, NullEmailSender
from app.notifications.service import NotificationService
from app.services.contracts import AccountStore

logger = logging.getLogger(__name__)


def build_email_sender(settings: Settings) -> EmailSender:
  if not settings.email_notifications_enabled:
    return NullEmailSender()
  config = MailerSendConfig(
    api_key=settings.mailersend_api_key or "",
    from_address=settings.email_from_address or "",
    from_name=settings.email_from_name,
    timeout_seconds=settings.mailersend_timeout_seconds,
    base_url=settings.mailersend_base_url,
  )
  return MailerSendEmailSender(config=config)


def build_notification_service(settings: Settings, *, account_store: AccountStore | None) -> NotificationService:
  if settings.email_notifications_enabled and not settings.ops_alert_email:
    logger.warning("AUTHORLY_OPS_ALERT_EMAIL is unset; provisioning alerts will only be logged.")
  return NotificationService(
    email_sender=build_email_sender(settings),
    account_store=account_store,
    email_enabled=settings.email_notifications_enabled,
    ops_alert_email=settings.ops_alert_email,
    app_base_url=settings.app_base_url,
  )
