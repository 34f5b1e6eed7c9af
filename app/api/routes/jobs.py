import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.api.deps import get_job_service, get_tenant_id, get_user_id
from app.api.models import JobCreateRequest, JobCreateResponse, JobStatusResponse
from app.services.jobs import JobService

router = APIRouter()
logger = logging.getLogger("app.api.routes.jobs")


@router.post("", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
  request: JobCreateRequest, service: Annotated[JobService, Depends(get_job_service)], tenant_id: Annotated[str, Depends(get_tenant_id)], user_id: Annotated[str, Depends(get_user_id)]
) -> JobCreateResponse:
  """Enqueue a background job and return its id immediately."""
  job = await service.enqueue(request.kind, request.payload, tenant_id=tenant_id, user_id=user_id, idempotency_key=request.idempotency_key)
  return JobCreateResponse(job_id=job.job_id, status=job.status)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, service: Annotated[JobService, Depends(get_job_service)], tenant_id: Annotated[str, Depends(get_tenant_id)]) -> JobStatusResponse:
  """Fetch the status of a job owned by the caller's tenant."""
  job = await service.get_job_status(job_id, tenant_id=tenant_id)
  children = await service.list_children(job)
  return JobStatusResponse.from_record(job, children)
