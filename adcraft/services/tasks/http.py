from __future__ import annotations

import logging

import httpx

from adcraft.config import Settings
from adcraft.services.tasks.interface import TaskEnqueuer

logger = logging.getLogger(__name__)

RUN_JOB_PATH = "/internal/tasks/run-job"


class HttpTaskEnqueuer(TaskEnqueuer):
  """Dispatches job executions by POSTing to the internal task endpoint.

  The endpoint accepts the task and runs the job in the background, so a worker
  fleet behind a load balancer spreads executions across processes.
  """

  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 30.0) -> None:
    self.settings = settings
    self._transport = transport
    self._timeout = timeout

  def _build_client(self) -> httpx.AsyncClient:
    # Never trust environment proxy variables for internal task dispatch.
    return httpx.AsyncClient(transport=self._transport, base_url=self.settings.base_url or "", trust_env=False)

  def _task_headers(self) -> dict[str, str]:
    """Build task authentication headers for internal endpoints."""
    if not self.settings.task_secret:
      raise RuntimeError("Task secret not configured.")
    return {"authorization": f"Bearer {self.settings.task_secret}"}

  async def enqueue(self, job_id: str) -> None:
    if not self.settings.base_url:
      raise RuntimeError("Base URL not configured, strictly required for HttpTaskEnqueuer.")

    url = f"{self.settings.base_url.rstrip('/')}{RUN_JOB_PATH}"
    try:
      async with self._build_client() as client:
        logger.info("Dispatching job %s to %s", job_id, url)
        response = await client.post(url, json={"job_id": job_id}, headers=self._task_headers(), timeout=self._timeout)
        response.raise_for_status()

    except httpx.HTTPStatusError as exc:
      logger.error("Task dispatch returned %s for job %s", exc.response.status_code, job_id)
      raise
    except httpx.RequestError as exc:
      logger.error("Failed to dispatch task for job %s: %s", job_id, exc)
      raise
