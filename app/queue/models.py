"""Wire format and routing options for queue messages."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Literal

import msgspec

from app.jobs.models import JobKind

Lane = Literal["critical", "default", "low"]

# Weighted like a priority scheduler: critical is picked first most often, low is never starved.
LANE_WEIGHTS: dict[Lane, int] = {"critical": 6, "default": 3, "low": 1}


class QueueMessage(msgspec.Struct, frozen=True):
  """Pointer to one unit of work; payloads carry identifiers only."""

  id: str
  kind: str
  payload: dict[str, Any]
  lane: str
  enqueued_at: float
  attempt: int = 0
  max_retry: int = 3
  last_error: str | None = None

  @property
  def job_kind(self) -> JobKind:
    return JobKind(self.kind)


@dataclass(frozen=True)
class TaskOptions:
  """Per-kind lane and delivery ceiling."""

  lane: Lane
  max_retry: int


TASK_OPTIONS: dict[JobKind, TaskOptions] = {
  JobKind.ACCOUNT_PROVISIONING: TaskOptions(lane="critical", max_retry=10),
  JobKind.PROVISIONING_RECONCILE: TaskOptions(lane="critical", max_retry=1),
  JobKind.COURSE_OUTLINE: TaskOptions(lane="default", max_retry=3),
  JobKind.LESSON_CONTENT: TaskOptions(lane="default", max_retry=3),
  JobKind.DOCUMENT_INGESTION: TaskOptions(lane="default", max_retry=3),
  JobKind.QUEUED_POLL: TaskOptions(lane="default", max_retry=1),
  JobKind.EXPIRED_CLEANUP: TaskOptions(lane="low", max_retry=1),
}


def task_options(kind: JobKind) -> TaskOptions:
  """Resolve queue options, rejecting kinds that are never enqueued."""
  options = TASK_OPTIONS.get(kind)
  if options is None:
    raise ValueError(f"Job kind {kind.value} is not enqueueable")
  return options


def encode_message(message: QueueMessage) -> bytes:
  return msgspec.json.encode(message)


def decode_message(raw: bytes | str) -> QueueMessage:
  return msgspec.json.decode(raw, type=QueueMessage)


def weighted_lane_order(rng: random.Random | None = None) -> list[Lane]:
  """Return every lane once, ordered by a weighted draw without replacement."""
  chooser = rng or random
  remaining: dict[Lane, int] = dict(LANE_WEIGHTS)
  order: list[Lane] = []
  while remaining:
    lanes = list(remaining)
    picked = chooser.choices(lanes, weights=[remaining[lane] for lane in lanes])[0]
    order.append(picked)
    del remaining[picked]
  return order


def retry_delay_seconds(attempt: int, *, base_seconds: float, max_seconds: float, rng: random.Random | None = None) -> float:
  """Exponential backoff with a small jitter so retries do not stampede."""
  chooser = rng or random
  delay = min(base_seconds * (2**attempt), max_seconds)
  return delay + chooser.uniform(0, delay * 0.1)


def build_message(kind: JobKind, payload: dict[str, Any], *, message_id: str, now: float) -> QueueMessage:
  options = task_options(kind)
  return QueueMessage(id=message_id, kind=kind.value, payload=payload, lane=options.lane, enqueued_at=now, max_retry=options.max_retry)
