import logging
import os
import sys

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("entrypoint")


def main() -> None:
  """Launch the API or the standalone worker; migrations run in the deploy pipeline."""
  role = os.getenv("AUTHORLY_PROCESS_ROLE", "api").strip().lower()
  if role == "worker":
    logger.info("Starting standalone worker (run alembic upgrade head in deploy pipeline)...")
    os.execvp(sys.executable, [sys.executable, "-m", "scripts.run_worker"])

  logger.info("Starting API (run alembic upgrade head in deploy pipeline)...")
  # Replace the current process so signals (SIGTERM, etc.) reach uvicorn directly.
  args = ["uvicorn", "app.main:app", "--host", "0.0.0.0", "--port", "8002", "--no-server-header"]
  os.execvp("uvicorn", args)


if __name__ == "__main__":
  main()
