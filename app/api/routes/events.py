"""Server-sent event stream of job lifecycle events for the calling user."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Annotated

import msgspec
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.api.deps import get_job_service, get_user_id
from app.services.jobs import JobService

router = APIRouter()
logger = logging.getLogger(__name__)

_KEEPALIVE_SECONDS = 15.0


async def _event_stream(request: Request, service: JobService, user_id: str) -> AsyncIterator[bytes]:
  events = service.subscribe(user_id)
  pending: asyncio.Task | None = None
  try:
    yield b": connected\n\n"
    while not await request.is_disconnected():
      if pending is None:
        pending = asyncio.ensure_future(anext(events))
      done, _ = await asyncio.wait({pending}, timeout=_KEEPALIVE_SECONDS)
      if not done:
        yield b": keep-alive\n\n"
        continue
      try:
        event = pending.result()
      except StopAsyncIteration:
        break
      finally:
        pending = None
      yield b"event: " + event.event_type.encode("utf-8") + b"\ndata: " + msgspec.json.encode(event) + b"\n\n"
  finally:
    if pending is not None:
      pending.cancel()
      await asyncio.gather(pending, return_exceptions=True)
    aclose = getattr(events, "aclose", None)
    if aclose is not None:
      await aclose()
    logger.debug("Event stream closed for user %s", user_id)


@router.get("")
async def stream_events(request: Request, service: Annotated[JobService, Depends(get_job_service)], user_id: Annotated[str, Depends(get_user_id)]) -> StreamingResponse:
  """Stream created/progress/completed/failed events for the caller's jobs."""
  return StreamingResponse(_event_stream(request, service, user_id), media_type="text/event-stream", headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})
