"""Object storage adapter for generation results and source documents."""

from __future__ import annotations

import json
import os
from datetime import timedelta
from typing import Any
from urllib.parse import urlparse, urlunparse

from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from starlette.concurrency import run_in_threadpool

from app.config import Settings
from app.services.contracts import ObjectStorage


class GcsObjectStorage(ObjectStorage):
  """Thin wrapper over GCS and emulator access for JSON result blobs."""

  def __init__(self, settings: Settings) -> None:
    self._bucket_name = settings.storage_bucket
    self._storage_host = settings.gcs_storage_host
    # Ensure emulator endpoint is visible to the SDK in local development.
    if self._storage_host:
      emulator_endpoint = _normalize_emulator_endpoint(self._storage_host)
      os.environ["STORAGE_EMULATOR_HOST"] = emulator_endpoint
      self._client = storage.Client(project=settings.gcp_project_id or "local-dev", credentials=AnonymousCredentials(), client_options={"api_endpoint": emulator_endpoint})
    else:
      self._client = storage.Client(project=settings.gcp_project_id)

  @property
  def bucket_name(self) -> str:
    return self._bucket_name

  async def ensure_bucket(self) -> None:
    """Create the bucket when missing in emulator mode only."""
    if not self._storage_host:
      return
    bucket = self._client.bucket(self._bucket_name)

    def _create_if_missing() -> None:
      if not bucket.exists(client=self._client):
        self._client.create_bucket(bucket)

    await run_in_threadpool(_create_if_missing)

  async def read_json(self, path: str) -> dict[str, Any]:
    raw = await self.read_text(path)
    data = json.loads(raw)
    if not isinstance(data, dict):
      raise ValueError(f"Object {path} is not a JSON object")
    return data

  async def write_json(self, path: str, data: dict[str, Any]) -> None:
    blob = self._client.bucket(self._bucket_name).blob(path)
    payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    await run_in_threadpool(blob.upload_from_string, payload, "application/json")

  async def read_text(self, path: str) -> str:
    blob = self._client.bucket(self._bucket_name).blob(path)
    data = await run_in_threadpool(blob.download_as_bytes)
    return data.decode("utf-8")

  async def presigned_url(self, path: str, *, ttl_seconds: int = 900) -> str:
    blob = self._client.bucket(self._bucket_name).blob(path)
    return await run_in_threadpool(blob.generate_signed_url, expiration=timedelta(seconds=ttl_seconds), version="v4", method="GET")


def build_object_storage(settings: Settings) -> GcsObjectStorage:
  """Create a storage client instance with environment-aware credentials."""
  return GcsObjectStorage(settings)


def _normalize_emulator_endpoint(raw_endpoint: str) -> str:
  """Normalize emulator endpoint so the SDK receives scheme+host+port only."""
  parsed = urlparse(raw_endpoint)
  if not parsed.scheme or not parsed.netloc:
    return raw_endpoint.rstrip("/")
  return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")
