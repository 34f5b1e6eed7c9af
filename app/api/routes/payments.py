"""Internal endpoints fed by the billing integration."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.api.deps import get_job_service, require_task_secret
from app.api.models import PaymentWebhookRequest, PaymentWebhookResponse, PendingSignupRequest, PendingSignupResponse
from app.services.jobs import JobService

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_task_secret)])
logger = logging.getLogger(__name__)


@router.post("/provisioning/pending", response_model=PendingSignupResponse, status_code=status.HTTP_201_CREATED)
async def record_pending_signup(payload: PendingSignupRequest, service: Annotated[JobService, Depends(get_job_service)]) -> PendingSignupResponse:
  """Store a signup when checkout starts so the paid webhook can provision it later."""
  record = await service.record_pending_signup(payload)
  return PendingSignupResponse(checkout_session_id=record.checkout_session_id, status=record.status, expires_at=record.expires_at)


@router.post("/payments/webhook", response_model=PaymentWebhookResponse)
async def payment_webhook(payload: PaymentWebhookRequest, service: Annotated[JobService, Depends(get_job_service)]) -> PaymentWebhookResponse:
  """Accept a verified checkout event; provisioning itself runs on the worker."""
  logger.info("Payment webhook for session %s status=%s", payload.session_id, payload.status)
  row = await service.handle_payment_webhook(session_id=payload.session_id, customer_id=payload.customer_id, subscription_id=payload.subscription_id, payment_status=payload.status)
  if row is None:
    return PaymentWebhookResponse(session_id=payload.session_id, status="ignored")
  return PaymentWebhookResponse(session_id=payload.session_id, status=row.status)
