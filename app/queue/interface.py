from __future__ import annotations

from typing import Any, Protocol

from app.jobs.models import JobKind
from app.queue.models import QueueMessage


class QueueClient(Protocol):
  """Interface for the persistent, multi-consumer work queue."""

  async def enqueue(self, kind: JobKind, payload: dict[str, Any], *, delay_seconds: float = 0) -> QueueMessage:
    """Publish a message on the lane configured for its kind."""
    ...

  async def dequeue(self, timeout: float) -> QueueMessage | None:
    """Take the next message across lanes, waiting up to timeout seconds."""
    ...

  async def ack(self, message: QueueMessage) -> None:
    """Drop a message that was handled."""
    ...

  async def retry(self, message: QueueMessage, *, error: str, delay_seconds: float) -> QueueMessage:
    """Schedule another delivery attempt after a delay."""
    ...

  async def dead_letter(self, message: QueueMessage, *, error: str) -> None:
    """Park a message that must not be delivered again."""
    ...

  async def depths(self) -> dict[str, int]:
    """Return pending message counts per lane plus scheduled retries."""
    ...

  async def close(self) -> None:
    """Release connections."""
    ...
