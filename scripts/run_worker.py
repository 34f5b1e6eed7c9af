"""Run the job worker and scheduler without the HTTP surface.

Deploy several replicas; the scheduler lock keeps periodic jobs exactly-once across them.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from app.config import get_settings
from app.core.logging import _initialize_logging
from app.runtime import build_runtime, close_runtime

logger = logging.getLogger("scripts.run_worker")


async def _run() -> None:
  settings = get_settings()
  _initialize_logging(settings, process_name="worker")
  runtime = build_runtime(settings)

  stop = asyncio.Event()
  loop = asyncio.get_running_loop()
  for sig in (signal.SIGINT, signal.SIGTERM):
    loop.add_signal_handler(sig, stop.set)

  await runtime.start(worker=True, scheduler=settings.scheduler_enabled)
  logger.info("Worker running concurrency=%s scheduler=%s", settings.worker_concurrency, settings.scheduler_enabled)
  try:
    await stop.wait()
    logger.info("Stop signal received; draining in-flight jobs.")
  finally:
    await close_runtime(runtime)


def main() -> None:
  asyncio.run(_run())


if __name__ == "__main__":
  main()
