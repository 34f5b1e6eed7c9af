from __future__ import annotations

import os

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import get_database_settings


class Base(DeclarativeBase):
  pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _database_url() -> str | None:
  """Return the DSN with the asyncpg driver selected."""
  settings = get_database_settings()
  database_url = settings.pg_dsn
  if database_url and database_url.startswith(("postgresql://", "postgres://")):
    database_url = "postgresql+asyncpg://" + database_url.split("://", 1)[1]
  return database_url


def get_db_engine() -> AsyncEngine | None:
  """Lazily create the shared engine; None when no DSN is configured."""
  global _engine
  if _engine is not None:
    return _engine

  database_url = _database_url()
  if not database_url:
    return None

  settings = get_database_settings()
  # Tag connections with the process role so pg_stat_activity separates API and worker load.
  application_name = f"authorly-jobs-{os.getenv('AUTHORLY_PROCESS_ROLE', 'api')}"
  _engine = create_async_engine(
    database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.pg_pool_size,
    max_overflow=settings.pg_max_overflow,
    connect_args={"timeout": settings.pg_connect_timeout, "server_settings": {"application_name": application_name}},
  )
  return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  global _session_factory
  if _session_factory is None:
    db_engine = get_db_engine()
    if db_engine is not None:
      _session_factory = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
  return _session_factory


async def dispose_db_engine() -> None:
  """Close pooled connections on shutdown."""
  global _engine, _session_factory
  if _engine is not None:
    await _engine.dispose()
  _engine = None
  _session_factory = None
