"""Redis queue, lock and pub/sub behavior against an in-process Redis server."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import fakeredis
import pytest

from app.events.publisher import JobEvent, user_channel
from app.events.redis_pubsub import RedisEventPublisher
from app.jobs.models import JobKind
from app.queue.models import decode_message
from app.queue.redis_queue import RedisQueueClient
from app.scheduler.locks import RedisLock

PREFIX = "authorly:queue"


class Clock:
  def __init__(self, now: float = 1_000.0) -> None:
    self.now = now

  def __call__(self) -> float:
    return self.now


@pytest.fixture
def server():
  return fakeredis.FakeServer()


@pytest.fixture
def clock() -> Clock:
  return Clock()


@pytest.fixture
async def consumers(server, clock):
  """Build queue clients that share one server; every client is closed after the test."""
  built: list[RedisQueueClient] = []

  def build(consumer_id: str) -> RedisQueueClient:
    client = RedisQueueClient(fakeredis.FakeAsyncRedis(server=server), consumer_id=consumer_id, heartbeat_ttl_seconds=30, poll_interval_seconds=0.01, clock=clock)
    built.append(client)
    return client

  yield build
  for client in built:
    await client.close()


@pytest.fixture
async def inspector(server):
  redis = fakeredis.FakeAsyncRedis(server=server)
  yield redis
  await redis.aclose()


@pytest.mark.anyio
async def test_messages_flow_through_lanes_and_ack_clears_the_active_list(consumers, inspector) -> None:
  worker = consumers("worker-a")
  provisioning = await worker.enqueue(JobKind.ACCOUNT_PROVISIONING, {"checkout_session_id": "cs_1"})
  await worker.enqueue(JobKind.EXPIRED_CLEANUP, {"scheduled_slot": 1})
  assert await worker.depths() == {"critical": 1, "default": 0, "low": 1, "scheduled": 0}

  taken = [await worker.dequeue(0), await worker.dequeue(0)]

  assert provisioning.id in {message.id for message in taken}
  assert await inspector.llen(f"{PREFIX}:active:worker-a") == 2
  for message in taken:
    await worker.ack(message)
  assert await inspector.llen(f"{PREFIX}:active:worker-a") == 0
  assert await worker.dequeue(0) is None


@pytest.mark.anyio
async def test_retry_waits_in_the_schedule_until_due(consumers, clock) -> None:
  worker = consumers("worker-a")
  await worker.enqueue(JobKind.LESSON_CONTENT, {"job_id": "j1"})
  message = await worker.dequeue(0)

  retried = await worker.retry(message, error="AI service timed out", delay_seconds=30)

  assert retried.attempt == 1
  assert (await worker.depths())["scheduled"] == 1
  assert await worker.dequeue(0) is None

  clock.now += 31
  promoted = await worker.dequeue(0)
  assert promoted.id == message.id
  assert (promoted.attempt, promoted.last_error) == (1, "AI service timed out")
  assert (await worker.depths())["scheduled"] == 0


@pytest.mark.anyio
async def test_dead_letter_parks_the_message_with_its_error(consumers, inspector) -> None:
  worker = consumers("worker-a")
  await worker.enqueue(JobKind.DOCUMENT_INGESTION, {"job_id": "j1"})
  message = await worker.dequeue(0)

  await worker.dead_letter(message, error="document is empty")

  [raw] = await inspector.lrange(f"{PREFIX}:dead", 0, -1)
  parked = decode_message(raw)
  assert (parked.id, parked.last_error) == (message.id, "document is empty")
  assert await inspector.llen(f"{PREFIX}:active:worker-a") == 0


@pytest.mark.anyio
async def test_undecodable_entries_are_parked_not_delivered(consumers, inspector) -> None:
  worker = consumers("worker-a")
  await inspector.lpush(f"{PREFIX}:lane:default", b"not-a-message")

  assert await worker.dequeue(0) is None
  assert await inspector.lrange(f"{PREFIX}:dead", 0, -1) == [b"not-a-message"]


@pytest.mark.anyio
async def test_work_held_by_a_dead_consumer_is_redelivered(consumers, clock, inspector) -> None:
  crashed = consumers("worker-a")
  survivor = consumers("worker-b")
  sent = await crashed.enqueue(JobKind.LESSON_CONTENT, {"job_id": "j1"})
  assert (await crashed.dequeue(0)).id == sent.id

  # worker-a never acks and its heartbeat goes quiet past the TTL.
  clock.now += 31
  redelivered = await survivor.dequeue(0)

  assert redelivered.id == sent.id
  assert redelivered.attempt == 1
  assert redelivered.last_error == "consumer worker-a stopped heartbeating"
  assert await inspector.llen(f"{PREFIX}:active:worker-a") == 0
  assert await inspector.zscore(f"{PREFIX}:consumers", "worker-a") is None
  await survivor.ack(redelivered)
  assert await inspector.llen(f"{PREFIX}:active:worker-b") == 0


@pytest.mark.anyio
async def test_live_consumer_keeps_its_in_flight_work(consumers, clock, inspector) -> None:
  busy = consumers("worker-a")
  idle = consumers("worker-b")
  await busy.enqueue(JobKind.LESSON_CONTENT, {"job_id": "j1"})
  await busy.dequeue(0)

  clock.now += 10

  assert await idle.dequeue(0) is None
  assert await inspector.llen(f"{PREFIX}:active:worker-a") == 1


@pytest.mark.anyio
async def test_orphan_past_its_delivery_budget_is_dead_lettered(consumers, clock, inspector) -> None:
  crashed = consumers("worker-a")
  survivor = consumers("worker-b")
  await crashed.enqueue(JobKind.QUEUED_POLL, {"scheduled_slot": 7})
  await crashed.dequeue(0)

  clock.now += 31

  assert await survivor.dequeue(0) is None
  [raw] = await inspector.lrange(f"{PREFIX}:dead", 0, -1)
  assert decode_message(raw).last_error == "consumer worker-a stopped heartbeating"


@pytest.mark.anyio
async def test_closing_a_consumer_releases_its_work_without_waiting_for_the_ttl(consumers) -> None:
  leaving = consumers("worker-a")
  staying = consumers("worker-b")
  sent = await leaving.enqueue(JobKind.COURSE_OUTLINE, {"job_id": "o1"})
  await leaving.dequeue(0)

  await leaving.close()
  redelivered = await staying.dequeue(0)

  assert redelivered.id == sent.id
  assert redelivered.attempt == 1


@pytest.mark.anyio
async def test_an_orphan_is_recovered_by_exactly_one_consumer(consumers, clock, inspector) -> None:
  crashed = consumers("worker-a")
  await crashed.enqueue(JobKind.LESSON_CONTENT, {"job_id": "j1"})
  await crashed.dequeue(0)
  clock.now += 31

  recovered = await asyncio.gather(consumers("worker-b").recover_orphans(), consumers("worker-c").recover_orphans())

  assert sorted(recovered) == [0, 1]
  assert await inspector.llen(f"{PREFIX}:lane:default") == 1


@pytest.mark.anyio
async def test_redis_lock_admits_one_holder_until_the_lease_expires(server) -> None:
  first = RedisLock(fakeredis.FakeAsyncRedis(server=server))
  second = RedisLock(fakeredis.FakeAsyncRedis(server=server))

  assert await first.acquire("authorly:schedule:reconcile:42", 0.2) is True
  assert await second.acquire("authorly:schedule:reconcile:42", 0.2) is False
  assert await second.acquire("authorly:schedule:reconcile:43", 0.2) is True

  await asyncio.sleep(0.3)
  assert await second.acquire("authorly:schedule:reconcile:42", 0.2) is True


@pytest.mark.anyio
async def test_redis_publisher_delivers_to_the_recipient_channel(server) -> None:
  redis = fakeredis.FakeAsyncRedis(server=server)
  publisher = RedisEventPublisher(redis)
  stream = publisher.subscribe("u1")
  pending = asyncio.ensure_future(anext(stream))

  # Malformed payloads are skipped; keep sending one until the subscription is live.
  for _ in range(100):
    if await redis.publish(user_channel("u1"), b"{") > 0:
      break
    await asyncio.sleep(0.01)
  event = JobEvent(event_type="completed", job_id="job-1", job_kind="lesson_content", status="completed", progress=100, occurred_at="2026-10-18T12:00:00Z")
  await publisher.publish("u2", JobEvent(event_type="created", job_id="other", job_kind="lesson_content", status="queued", progress=0, occurred_at="2026-10-18T12:00:00Z"))
  await publisher.publish("u1", event)

  received = await asyncio.wait_for(pending, timeout=2.0)
  assert received == event
  await stream.aclose()
  await redis.aclose()


@pytest.mark.anyio
async def test_redis_publish_failure_is_logged_not_raised() -> None:
  redis = AsyncMock()
  redis.publish.side_effect = ConnectionError("redis down")
  event = JobEvent(event_type="progress", job_id="job-1", job_kind="lesson_content", status="running", progress=40, occurred_at="2026-10-18T12:00:00Z")

  await RedisEventPublisher(redis).publish("u1", event)

  redis.publish.assert_awaited_once()
