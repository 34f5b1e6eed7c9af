"""HTTP adapter for the content generation service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.config import Settings
from app.jobs.errors import RetryableJobError, TerminalJobError
from app.services.contracts import AIProvider, IngestionResult, LessonResult, OutlineResult

logger = logging.getLogger(__name__)


class HttpAIProvider(AIProvider):
  """Calls the generation service's JSON endpoints."""

  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    if not settings.ai_service_url:
      raise RuntimeError("AI service URL not configured (AUTHORLY_AI_SERVICE_URL).")
    self._base_url = settings.ai_service_url.rstrip("/")
    self._api_key = settings.ai_service_api_key
    self._timeout = float(settings.ai_timeout_seconds)
    self._transport = transport

  def _headers(self) -> dict[str, str]:
    headers = {"content-type": "application/json", "accept": "application/json"}
    if self._api_key:
      headers["authorization"] = f"Bearer {self._api_key}"
    return headers

  async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
    url = f"{self._base_url}{path}"
    try:
      # Never trust environment proxy variables for service-to-service calls.
      async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout, trust_env=False) as client:
        response = await client.post(url, json=body, headers=self._headers())
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as exc:
      status_code = exc.response.status_code
      logger.error("AI service %s returned %s: %s", path, status_code, exc.response.text[:500])
      # 4xx other than throttling means the request itself is unusable.
      if 400 <= status_code < 500 and status_code not in {408, 409, 429}:
        raise TerminalJobError(f"AI service rejected request ({status_code})") from exc
      raise RetryableJobError(f"AI service error ({status_code})") from exc
    except httpx.RequestError as exc:
      logger.error("AI service request to %s failed: %s", path, exc)
      raise RetryableJobError(f"AI service unreachable: {type(exc).__name__}") from exc

  async def generate_outline(self, request: dict[str, Any]) -> OutlineResult:
    data = await self._post("/v1/outlines", request)
    return OutlineResult(sections=list(data.get("sections") or []), tokens_used=int(data.get("tokens_used") or 0))

  async def generate_lesson_content(self, request: dict[str, Any]) -> LessonResult:
    data = await self._post("/v1/lessons", request)
    return LessonResult(components=list(data.get("components") or []), tokens_used=int(data.get("tokens_used") or 0))

  async def ingest_document(self, text: str) -> IngestionResult:
    data = await self._post("/v1/ingestions", {"text": text})
    return IngestionResult(summary=str(data.get("summary") or ""), chunks=[str(chunk) for chunk in data.get("chunks") or []], tokens_used=int(data.get("tokens_used") or 0))
