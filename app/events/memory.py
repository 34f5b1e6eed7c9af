"""In-process event bus for single-replica runs and tests.

Best-effort and process-local: subscribers only see events published by the same process.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from app.events.publisher import EventPublisher, JobEvent


class InMemoryEventPublisher(EventPublisher):
  def __init__(self) -> None:
    self._subscribers: dict[str, set[asyncio.Queue[JobEvent]]] = {}
    self.published: list[tuple[str, JobEvent]] = []

  async def publish(self, user_id: str, event: JobEvent) -> None:
    self.published.append((user_id, event))
    for queue in list(self._subscribers.get(user_id, ())):
      # Unbounded queue: publishing never blocks job execution.
      queue.put_nowait(event)

  async def subscribe(self, user_id: str) -> AsyncIterator[JobEvent]:
    queue: asyncio.Queue[JobEvent] = asyncio.Queue()
    self._subscribers.setdefault(user_id, set()).add(queue)
    try:
      while True:
        yield await queue.get()
    finally:
      subscribers = self._subscribers.get(user_id)
      if subscribers is not None:
        subscribers.discard(queue)
        if not subscribers:
          self._subscribers.pop(user_id, None)

  def subscriber_count(self, user_id: str) -> int:
    return len(self._subscribers.get(user_id, ()))
