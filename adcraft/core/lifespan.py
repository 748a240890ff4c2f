import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from adcraft.core.database import create_schema, get_db_engine
from adcraft.core.logging import initialize_logging
from adcraft.jobs.orchestrator import Orchestrator
from adcraft.services.tasks.local import InProcessEnqueuer
from adcraft.storage.postgres_gate_repo import PostgresGateBackend

logger = logging.getLogger("adcraft.core.lifespan")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"
  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"
  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Initialize logging and storage, then resume jobs interrupted by the last shutdown."""
  settings = app.state.settings
  orchestrator: Orchestrator = app.state.orchestrator

  try:
    initialize_logging(settings)
  except RuntimeError:
    logger.warning("Logging setup failed; continuing with default handlers.", exc_info=True)

  if settings.job_store_backend == "postgres":
    engine = get_db_engine()
    if engine is None:
      raise RuntimeError("Postgres backend selected but no engine could be built.")
    logger.info("Preparing schema on %s", _redact_dsn(settings.pg_dsn))
    await create_schema(engine)
    backend = orchestrator.gate.backend
    if isinstance(backend, PostgresGateBackend):
      await backend.initialize()

  resumed = await orchestrator.resume_unfinished()
  logger.info("Startup complete environment=%s resumed_jobs=%d", settings.environment, resumed)

  yield

  enqueuer = app.state.enqueuer
  if isinstance(enqueuer, InProcessEnqueuer) and enqueuer.pending:
    logger.info("Cancelling %d in-process executions; they resume on next start.", enqueuer.pending)
    await enqueuer.shutdown()
