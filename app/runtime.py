"""Builds and owns the process-wide job orchestration components.

The API process and the standalone worker both construct one `Runtime`; nothing here is a
module-level singleton, so tests can assemble a runtime from in-memory parts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from redis.asyncio import Redis

from app.config import Settings
from app.core.database import dispose_db_engine
from app.core.firebase import initialize_firebase
from app.core.redis import build_redis_client
from app.events.memory import InMemoryEventPublisher
from app.events.publisher import EventPublisher, NullEventPublisher
from app.events.redis_pubsub import RedisEventPublisher
from app.jobs.coordinator import FanOutCoordinator
from app.jobs.dispatch import JobDispatcher, JobFailureRecorder, JobHandler, JobHandlerRegistry, RetryPolicy
from app.jobs.handlers.base import JobHandlerBase, ParentJobHandler
from app.jobs.handlers.generation import CourseOutlineHandler, LessonContentHandler
from app.jobs.handlers.ingestion import DocumentIngestionHandler
from app.jobs.handlers.maintenance import ExpiredCleanupHandler, ProvisioningReconcileHandler, QueuedPollHandler
from app.jobs.handlers.provisioning import AccountProvisioningHandler
from app.jobs.models import JobKind
from app.jobs.reconciler import ProvisioningReconciler, ReconcileThresholds
from app.jobs.worker import WorkerLoop
from app.notifications.factory import build_notification_service
from app.notifications.service import NotificationService
from app.queue.factory import get_queue_client
from app.queue.interface import QueueClient
from app.scheduler.locks import DistributedLock, InMemoryLock, RedisLock
from app.scheduler.scheduler import Scheduler, default_schedule
from app.services.accounts import PostgresAccountStore
from app.services.ai_provider import HttpAIProvider
from app.services.contracts import AccountStore, AIProvider, IdentityProvider, ObjectStorage
from app.services.identity import FirebaseIdentityProvider
from app.services.jobs import JobService
from app.services.storage_client import build_object_storage
from app.storage.jobs_repo import JobsRepository
from app.storage.postgres_jobs_repo import PostgresJobsRepository
from app.storage.postgres_provisioning_repo import PostgresProvisioningRepository
from app.storage.provisioning_repo import ProvisioningRepository

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
  """Wired components plus the background loops this process runs."""

  settings: Settings
  queue: QueueClient
  lock: DistributedLock
  publisher: EventPublisher
  jobs_repo: JobsRepository
  provisioning_repo: ProvisioningRepository
  notifications: NotificationService
  coordinator: FanOutCoordinator
  registry: JobHandlerRegistry
  dispatcher: JobDispatcher
  worker: WorkerLoop
  scheduler: Scheduler
  job_service: JobService
  storage: ObjectStorage
  redis: Redis | None = None
  _scheduler_stop: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
  _scheduler_task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

  async def start(self, *, worker: bool, scheduler: bool) -> None:
    if worker:
      self.worker.start()
    if scheduler:
      self._scheduler_stop.clear()
      self._scheduler_task = asyncio.create_task(self.scheduler.run(self._scheduler_stop), name="authorly-scheduler")
    logger.info("Runtime started worker=%s scheduler=%s queue=%s", worker, scheduler, self.settings.queue_provider)

  async def shutdown(self) -> None:
    self._scheduler_stop.set()
    if self._scheduler_task is not None:
      await self._scheduler_task
      self._scheduler_task = None
    await self.worker.stop()
    await self.queue.close()
    if self.redis is not None and self.settings.queue_provider != "redis":
      await self.redis.aclose()
    logger.info("Runtime shut down.")


def build_handlers(
  *,
  settings: Settings,
  jobs_repo: JobsRepository,
  provisioning_repo: ProvisioningRepository,
  queue: QueueClient,
  publisher: EventPublisher,
  notifications: NotificationService,
  coordinator: FanOutCoordinator,
  recorder: JobFailureRecorder,
  retry_policy: RetryPolicy,
  ai: AIProvider,
  storage: ObjectStorage,
  identity: IdentityProvider,
  accounts: AccountStore,
) -> dict[JobKind, JobHandler]:
  """Assemble one handler per job kind; the registry rejects any gap."""
  row_handlers: dict[JobKind, JobHandlerBase] = {
    JobKind.COURSE_OUTLINE: CourseOutlineHandler(jobs_repo=jobs_repo, publisher=publisher, ai=ai, storage=storage, coordinator=coordinator, notifications=notifications),
    JobKind.LESSON_CONTENT: LessonContentHandler(jobs_repo=jobs_repo, publisher=publisher, ai=ai, storage=storage, coordinator=coordinator, notifications=notifications),
    JobKind.DOCUMENT_INGESTION: DocumentIngestionHandler(jobs_repo=jobs_repo, publisher=publisher, ai=ai, storage=storage, notifications=notifications),
    JobKind.FULL_COURSE: ParentJobHandler(jobs_repo=jobs_repo, publisher=publisher),
  }
  reconciler = ProvisioningReconciler(
    provisioning_repo=provisioning_repo, jobs_repo=jobs_repo, queue=queue, notifications=notifications, recorder=recorder, thresholds=ReconcileThresholds.from_settings(settings)
  )
  handlers: dict[JobKind, JobHandler] = dict(row_handlers)
  handlers[JobKind.ACCOUNT_PROVISIONING] = AccountProvisioningHandler(provisioning_repo=provisioning_repo, identity=identity, accounts=accounts, notifications=notifications)
  handlers[JobKind.PROVISIONING_RECONCILE] = ProvisioningReconcileHandler(reconciler=reconciler)
  handlers[JobKind.EXPIRED_CLEANUP] = ExpiredCleanupHandler(provisioning_repo=provisioning_repo)
  handlers[JobKind.QUEUED_POLL] = QueuedPollHandler(jobs_repo=jobs_repo, handlers=row_handlers, recorder=recorder, queue=queue, retry_policy=retry_policy, batch_size=settings.poll_batch_size)
  return handlers


def assemble_runtime(
  settings: Settings,
  *,
  queue: QueueClient,
  lock: DistributedLock,
  publisher: EventPublisher,
  jobs_repo: JobsRepository,
  provisioning_repo: ProvisioningRepository,
  ai: AIProvider,
  storage: ObjectStorage,
  identity: IdentityProvider,
  accounts: AccountStore,
  redis: Redis | None = None,
) -> Runtime:
  """Wire every component from already-built adapters."""
  notifications = build_notification_service(settings, account_store=accounts)
  coordinator = FanOutCoordinator(jobs_repo=jobs_repo, queue=queue, storage=storage, publisher=publisher, notifications=notifications)
  recorder = JobFailureRecorder(jobs_repo=jobs_repo, coordinator=coordinator, publisher=publisher)
  retry_policy = RetryPolicy(base_seconds=settings.retry_base_seconds, max_seconds=settings.retry_max_seconds)
  handlers = build_handlers(
    settings=settings,
    jobs_repo=jobs_repo,
    provisioning_repo=provisioning_repo,
    queue=queue,
    publisher=publisher,
    notifications=notifications,
    coordinator=coordinator,
    recorder=recorder,
    retry_policy=retry_policy,
    ai=ai,
    storage=storage,
    identity=identity,
    accounts=accounts,
  )
  registry = JobHandlerRegistry(handlers)
  dispatcher = JobDispatcher(registry=registry, queue=queue, recorder=recorder, retry_policy=retry_policy)
  worker = WorkerLoop(queue=queue, dispatcher=dispatcher, concurrency=settings.worker_concurrency, dequeue_timeout_seconds=settings.worker_dequeue_timeout_seconds)
  scheduler = Scheduler(default_schedule(settings), lock=lock, queue=queue, tick_seconds=settings.scheduler_tick_seconds)
  job_service = JobService(jobs_repo=jobs_repo, provisioning_repo=provisioning_repo, queue=queue, publisher=publisher, coordinator=coordinator, pending_ttl_seconds=settings.pending_provisioning_ttl_seconds)
  return Runtime(
    settings=settings,
    queue=queue,
    lock=lock,
    publisher=publisher,
    jobs_repo=jobs_repo,
    provisioning_repo=provisioning_repo,
    notifications=notifications,
    coordinator=coordinator,
    registry=registry,
    dispatcher=dispatcher,
    worker=worker,
    scheduler=scheduler,
    job_service=job_service,
    storage=storage,
    redis=redis,
  )


def build_runtime(settings: Settings) -> Runtime:
  """Build the production runtime from settings: Postgres, Redis, GCS, Firebase and the AI service."""
  redis = build_redis_client(settings)
  queue = get_queue_client(settings, redis)
  if redis is not None:
    lock: DistributedLock = RedisLock(redis)
    publisher: EventPublisher = RedisEventPublisher(redis)
  elif settings.queue_provider == "memory":
    lock = InMemoryLock()
    publisher = InMemoryEventPublisher()
  else:
    lock = InMemoryLock()
    publisher = NullEventPublisher()

  if not initialize_firebase(settings):
    logger.warning("Identity provider not configured; account provisioning will fail until Firebase is set up.")

  return assemble_runtime(
    settings,
    queue=queue,
    lock=lock,
    publisher=publisher,
    jobs_repo=PostgresJobsRepository(),
    provisioning_repo=PostgresProvisioningRepository(),
    ai=HttpAIProvider(settings),
    storage=build_object_storage(settings),
    identity=FirebaseIdentityProvider(),
    accounts=PostgresAccountStore(),
    redis=redis,
  )


async def close_runtime(runtime: Runtime) -> None:
  await runtime.shutdown()
  await dispose_db_engine()
