"""SQL emitted by the Postgres job store and its fan-in decisions over a scripted session."""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from app.schema.jobs import Job
from app.storage import postgres_jobs_repo
from app.storage.postgres_jobs_repo import (
  PostgresJobsRepository,
  child_stats_statement,
  claim_statement,
  complete_statement,
  fail_statement,
  parent_lock_statement,
  requeue_stale_statement,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def _compile(stmt: Any) -> tuple[str, dict[str, Any]]:
  compiled = stmt.compile(dialect=postgresql.dialect())
  return str(compiled), dict(compiled.params)


class ScriptedSession:
  """Async session stand-in that answers execute() calls from a fixed script."""

  def __init__(self, results: list[Any]) -> None:
    self._results = list(results)
    self.statements: list[Any] = []
    self.commits = 0

  async def __aenter__(self) -> ScriptedSession:
    return self

  async def __aexit__(self, *exc: object) -> bool:
    return False

  def begin(self) -> ScriptedSession:
    return self

  async def execute(self, stmt: Any) -> Any:
    self.statements.append(stmt)
    return self._results.pop(0)

  async def commit(self) -> None:
    self.commits += 1


def _scalar(row: Job | None) -> MagicMock:
  return MagicMock(scalar_one_or_none=MagicMock(return_value=row))


def _stats(*, total: int, completed: int, failed: int, pending: int, tokens: int) -> MagicMock:
  return MagicMock(one=MagicMock(return_value=SimpleNamespace(total=total, completed=completed, failed=failed, pending=pending, tokens=tokens)))


def _row(job_id: str, kind: str, status: str, **overrides: Any) -> Job:
  values: dict[str, Any] = {
    "job_id": job_id,
    "tenant_id": "t1",
    "user_id": "u1",
    "job_kind": kind,
    "status": status,
    "request_json": {},
    "progress": 10,
    "tokens_used": 0,
    "retry_count": 0,
    "max_retries": 3,
    "idempotency_key": f"key:{job_id}",
  }
  values.update(overrides)
  return Job(**values)


@pytest.fixture
def scripted(monkeypatch):
  """Point the repository at a session that replays the given results."""

  def install(*results: Any) -> tuple[PostgresJobsRepository, ScriptedSession]:
    session = ScriptedSession(list(results))
    monkeypatch.setattr(postgres_jobs_repo, "get_session_factory", lambda: lambda: session)
    return PostgresJobsRepository(), session

  return install


def test_claim_only_moves_queued_rows_to_running() -> None:
  sql, params = _compile(claim_statement("job-1", now=NOW))

  assert sql.startswith("UPDATE jobs SET status=")
  assert "WHERE jobs.job_id = " in sql and "AND jobs.status = " in sql
  assert "RETURNING" in sql
  assert {"queued", "running", "job-1"} <= set(params.values())


def test_complete_only_applies_to_running_rows() -> None:
  sql, params = _compile(complete_statement("job-1", result_path="r.json", tokens_used=9, progress_message="Lesson ready", now=NOW))

  assert "AND jobs.status = " in sql
  assert {"completed", "running", "r.json", 9, 100} <= set(params.values())
  assert "RETURNING" in sql


def test_fail_never_overwrites_a_terminal_row() -> None:
  sql, params = _compile(fail_statement("job-1", error_message="boom", now=NOW))

  assert "jobs.status NOT IN" in sql
  assert "failed" in params.values()
  assert any(isinstance(value, (list, tuple)) and set(value) == {"completed", "failed"} for value in params.values())


def test_requeue_of_a_stale_row_is_conditional_on_its_start_time() -> None:
  sql, params = _compile(requeue_stale_statement("job-1", older_than=NOW, error_message="worker lost", now=NOW))

  assert "jobs.started_at < " in sql
  assert "retry_count=(jobs.retry_count + " in sql
  assert {"queued", "running", "worker lost"} <= set(params.values())


def test_parent_is_locked_without_skipping() -> None:
  sql, _ = _compile(parent_lock_statement("p1"))

  assert sql.endswith("FOR UPDATE")


def test_child_stats_aggregate_in_one_pass() -> None:
  sql, _ = _compile(child_stats_statement("p1"))

  assert sql.count("count(*) FILTER (WHERE") == 3
  assert "coalesce(sum(jobs.tokens_used)" in sql
  assert "WHERE jobs.parent_job_id = " in sql


@pytest.mark.anyio
async def test_finalize_waits_for_children_that_are_not_inserted_yet(scripted) -> None:
  parent = _row("p1", "full_course", "running", expected_children=3)
  repo, session = scripted(_scalar(parent), _stats(total=1, completed=1, failed=0, pending=0, tokens=100))

  result = await repo.try_finalize_parent("p1")

  assert (result.was_finalized, result.all_complete) == (False, False)
  assert parent.status == "running"
  assert (parent.progress, parent.progress_message) == (40, "Generated 1 of 3 lessons...")
  assert str(session.statements[0].compile(dialect=postgresql.dialect())).endswith("FOR UPDATE")


@pytest.mark.anyio
async def test_finalize_settles_the_parent_from_child_counts(scripted) -> None:
  parent = _row("p1", "full_course", "running", expected_children=3)
  repo, _ = scripted(_scalar(parent), _stats(total=3, completed=2, failed=1, pending=0, tokens=210))

  result = await repo.try_finalize_parent("p1")

  assert (result.was_finalized, result.parent_status, result.total) == (True, "failed", 3)
  assert (parent.status, parent.progress, parent.tokens_used) == ("failed", 100, 210)
  assert parent.progress_message == "Generated 2 of 3 lessons."
  assert parent.error_message == "1 lesson(s) failed to generate"


@pytest.mark.anyio
async def test_finalize_of_a_settled_parent_changes_nothing(scripted) -> None:
  parent = _row("p1", "full_course", "completed", progress=100)
  repo, _ = scripted(_scalar(parent), _stats(total=2, completed=2, failed=0, pending=0, tokens=20))

  result = await repo.try_finalize_parent("p1")

  assert (result.was_finalized, result.all_complete, result.parent_status) == (False, True, "completed")


@pytest.mark.anyio
async def test_finalize_of_an_unknown_parent_raises(scripted) -> None:
  repo, _ = scripted(_scalar(None))

  with pytest.raises(LookupError):
    await repo.try_finalize_parent("missing")


@pytest.mark.anyio
async def test_claim_complete_and_fail_map_returned_rows(scripted) -> None:
  running = _row("j1", "lesson_content", "running", started_at=NOW)
  completed = _row("j1", "lesson_content", "completed", progress=100, result_path="r.json", tokens_used=9)
  repo, session = scripted(_scalar(running), _scalar(completed), _scalar(None))

  claimed = await repo.claim_job("j1")
  done = await repo.complete_job("j1", result_path="r.json", tokens_used=9)
  again = await repo.fail_job("j1", "late failure")

  assert (claimed.status, claimed.started_at) == ("running", NOW)
  assert (done.status, done.result_path, done.tokens_used) == ("completed", "r.json", 9)
  assert again is None
  assert session.commits == 3
