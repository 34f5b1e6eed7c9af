from __future__ import annotations

from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import DBAPIError

from app.api.deps import get_runtime
from app.api.routes import events, jobs, payments
from app.config import get_settings
from app.core.exceptions import database_exception_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from app.core.lifespan import lifespan
from app.core.middleware import RequestLoggingMiddleware
from app.runtime import Runtime

settings = get_settings()

app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

app.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization", "x-tenant-id", "x-user-id"], expose_headers=["content-length", "x-request-id"])


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(DBAPIError, database_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check(runtime: Annotated[Runtime, Depends(get_runtime)]) -> dict[str, object]:
  """Return health status with per-lane queue depths."""
  return {"status": "ok", "version": "0.1.0", "queue": await runtime.queue.depths(), "workerActive": runtime.worker.active_count}


app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
app.include_router(events.router, prefix="/v1/events", tags=["events"])
app.include_router(payments.router)
