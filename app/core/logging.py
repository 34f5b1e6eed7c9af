"""Process logging: stdout plus a rotating file per process.

Every line carries the process role (api or worker plus pid) and, while a queue message is
being handled, the job it belongs to, so interleaved output from concurrent handlers can be
told apart.
"""

import contextvars
import logging
import logging.handlers
import os
import sys
import time
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType

from app.config import Settings

LOG_LINE_FORMAT = "%(asctime)s - %(role)s - %(name)s - %(levelname)s - %(job)s%(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

# Client libraries that are noisy at DEBUG; job logs matter more.
QUIET_LOGGERS = ("asyncio", "httpx", "httpcore", "redis", "asyncpg", "sqlalchemy.engine", "urllib3", "google.auth")

_current_job: contextvars.ContextVar[str | None] = contextvars.ContextVar("authorly_current_job", default=None)

# Track logging state
_LOG_FILE_PATH: Path | None = None
_LOGGING_INITIALIZED = False


@contextmanager
def job_log_context(ref: str) -> Iterator[None]:
  """Tag records logged inside the block with `ref`; each asyncio task keeps its own value."""
  token = _current_job.set(ref)
  try:
    yield
  finally:
    _current_job.reset(token)


def current_job_ref() -> str | None:
  return _current_job.get()


class JobContextFilter(logging.Filter):
  """Stamps each record with the process role and the job being handled."""

  def __init__(self, role: str) -> None:
    super().__init__()
    self.role = role

  def filter(self, record: logging.LogRecord) -> bool:
    record.role = self.role
    ref = _current_job.get()
    record.job = f"[{ref}] " if ref else ""
    return True


class TruncatedFormatter(logging.Formatter):
  """Formatter that truncates the stack trace to the last few lines."""

  # ruff: noqa: N802
  def formatException(self, ei: tuple[type[BaseException] | None, BaseException | None, TracebackType | None]) -> str:
    lines = traceback.format_exception(*ei)
    # Keep header + last 5 lines of traceback
    if len(lines) > 6:
      return "".join(lines[:1] + ["    ...\n"] + lines[-5:])
    return "".join(lines)


def build_handlers(settings: Settings, *, process_name: str, log_dir: Path | None = None) -> tuple[logging.Handler, logging.Handler, Path]:
  """Stdout and rotating-file handlers sharing one role filter; backups rotate as <name>.log-1."""
  log_dir = log_dir or Path(__file__).resolve().parent.parent.parent / "logs"
  try:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"authorly_{process_name}_{time.strftime('%Y%m%d_%H%M%S')}_{os.getpid()}.log"
    log_path.touch(exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Failed to create log file under {log_dir}: {exc}") from exc

  role_filter = JobContextFilter(f"{process_name}:{os.getpid()}")
  stream = logging.StreamHandler(sys.stdout)
  stream.setFormatter(TruncatedFormatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  file_handler = logging.handlers.RotatingFileHandler(log_path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  file_handler.namer = lambda name: name.replace(".log.", ".log-")
  file_handler.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  for handler in (stream, file_handler):
    handler.addFilter(role_filter)
  return stream, file_handler, log_path


def setup_logging(settings: Settings, *, process_name: str = "api", log_dir: Path | None = None) -> Path:
  """Route the root and uvicorn loggers through our handlers."""
  stream_handler, file_handler, log_path = build_handlers(settings, process_name=process_name, log_dir=log_dir)
  for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
    log = logging.getLogger(logger_name)
    log.handlers = [stream_handler, file_handler]
    log.propagate = False

  logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO, handlers=[stream_handler, file_handler], force=True)
  for logger_name in QUIET_LOGGERS:
    logging.getLogger(logger_name).setLevel(logging.WARNING)
  return log_path


def _initialize_logging(settings: Settings, *, process_name: str = "api") -> None:
  """Initialize logging once per process."""
  global _LOG_FILE_PATH, _LOGGING_INITIALIZED
  if _LOGGING_INITIALIZED:
    return
  _LOG_FILE_PATH = setup_logging(settings, process_name=process_name)
  _LOGGING_INITIALIZED = True
  logging.getLogger("app.core.logging").info("Logging initialized. Writing to %s", _LOG_FILE_PATH)
