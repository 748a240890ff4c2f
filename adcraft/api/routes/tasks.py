from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status

from adcraft.api.deps import get_app_settings, get_orchestrator
from adcraft.api.models import TaskPayload
from adcraft.config import Settings
from adcraft.jobs.orchestrator import Orchestrator

router = APIRouter(prefix="/tasks", tags=["tasks"])
logger = logging.getLogger(__name__)


@router.post("/run-job", status_code=status.HTTP_202_ACCEPTED)
async def run_job_task(  # noqa: B008
  payload: TaskPayload,
  background_tasks: BackgroundTasks,
  settings: Settings = Depends(get_app_settings),  # noqa: B008
  orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
  authorization: str | None = Header(default=None),
) -> dict[str, str]:
  """
  Handler for dispatched job executions.
  Accepts the task quickly and runs the job in the background so dispatchers get a fast 2xx response.
  """
  # Internal task endpoints must be authenticated to avoid arbitrary job execution.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  if not secrets.compare_digest(authorization or "", f"Bearer {settings.task_secret}"):
    logger.warning("Unauthorized access attempt to /run-job")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")

  # Unknown ids surface as 404 here rather than failing silently in the background.
  await orchestrator.get_status(payload.job_id)
  logger.info("Received task for job %s", payload.job_id)
  background_tasks.add_task(orchestrator.run_job, payload.job_id)
  return {"status": "accepted"}
