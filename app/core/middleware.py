import logging
import time
import uuid

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("app.core.middleware")

# Long-lived streams are logged at connect time only.
_STREAMING_PATHS = ("/v1/events",)


class RequestLoggingMiddleware:
  """Assigns a request id and logs method, path, status and duration; bodies are never logged."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    request_id = uuid.uuid4().hex
    scope.setdefault("state", {})["request_id"] = request_id
    path = scope.get("path", "")
    method = scope.get("method", "")
    started = time.perf_counter()
    status_code = 500

    async def send_wrapper(message: Message) -> None:
      nonlocal status_code
      if message["type"] == "http.response.start":
        status_code = int(message["status"])
        headers = MutableHeaders(scope=message)
        headers.append("X-Request-Id", request_id)
        if path.startswith(_STREAMING_PATHS):
          logger.info("request_id=%s %s %s -> %s (stream opened)", request_id, method, path, status_code)
      await send(message)

    try:
      await self.app(scope, receive, send_wrapper)
    finally:
      duration_ms = (time.perf_counter() - started) * 1000
      if not path.startswith(_STREAMING_PATHS):
        logger.info("request_id=%s %s %s -> %s in %.1fms", request_id, method, path, status_code, duration_ms)
