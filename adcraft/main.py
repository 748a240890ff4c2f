from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from adcraft.ai.capabilities import StageCapabilities
from adcraft.api.routes import jobs, tasks
from adcraft.config import Settings, get_settings
from adcraft.core.exceptions import (
  global_exception_handler,
  http_exception_handler,
  job_access_denied_exception_handler,
  job_not_found_exception_handler,
  request_validation_exception_handler,
  throttled_exception_handler,
)
from adcraft.core.lifespan import lifespan
from adcraft.core.middleware import RequestIdMiddleware
from adcraft.jobs.errors import JobAccessDeniedError, JobNotFoundError, ThrottledError
from adcraft.jobs.orchestrator import Orchestrator, build_orchestrator

__version__ = "0.1.0"


def create_app(capabilities: StageCapabilities, settings: Settings | None = None, *, orchestrator: Orchestrator | None = None) -> FastAPI:
  """Build the service around the AI capability adapters a deployment provides."""
  settings = settings or get_settings()
  orchestrator = orchestrator or build_orchestrator(settings, capabilities)

  app = FastAPI(lifespan=lifespan, title="adcraft-engine", version=__version__, docs_url=None, redoc_url=None, openapi_url="/openapi.json" if settings.debug else None)
  app.state.settings = settings
  app.state.orchestrator = orchestrator
  app.state.enqueuer = orchestrator.enqueuer

  app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization", "x-owner-id"], expose_headers=["x-request-id"])

  app.add_exception_handler(Exception, global_exception_handler)
  app.add_exception_handler(HTTPException, http_exception_handler)
  app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
  app.add_exception_handler(ThrottledError, throttled_exception_handler)
  app.add_exception_handler(JobNotFoundError, job_not_found_exception_handler)
  app.add_exception_handler(JobAccessDeniedError, job_access_denied_exception_handler)

  app.add_middleware(RequestIdMiddleware)

  @app.get("/health", include_in_schema=False)
  async def health_check() -> dict[str, str]:
    """Return a simple health status."""
    return {"status": "ok", "version": __version__}

  app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
  app.include_router(tasks.router, prefix="/internal", tags=["tasks"])
  return app
