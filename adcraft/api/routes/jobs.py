import logging

from fastapi import APIRouter, Depends, status

from adcraft.api.deps import get_orchestrator, get_owner_id
from adcraft.api.models import JobCreateResponse, JobStatusResponse, SubmitJobRequest
from adcraft.jobs.orchestrator import Orchestrator

router = APIRouter()
logger = logging.getLogger("adcraft.api.routes.jobs")


@router.post("", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(  # noqa: B008
  request: SubmitJobRequest,
  owner_id: str = Depends(get_owner_id),  # noqa: B008
  orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> JobCreateResponse:
  """Submit an image for creative generation. Throttled submissions create no job."""
  job_id = await orchestrator.submit(owner_id, request.source_asset_ref, request.language, request.idempotency_key)
  job = await orchestrator.get_status(job_id, owner_id)
  return JobCreateResponse(job_id=job_id, state=job.state)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(  # noqa: B008
  job_id: str,
  owner_id: str = Depends(get_owner_id),  # noqa: B008
  orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> JobStatusResponse:
  """Fetch the current state and outputs of a job."""
  job = await orchestrator.get_status(job_id, owner_id)
  return JobStatusResponse.from_record(job)


@router.post("/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(  # noqa: B008
  job_id: str,
  owner_id: str = Depends(get_owner_id),  # noqa: B008
  orchestrator: Orchestrator = Depends(get_orchestrator),  # noqa: B008
) -> JobStatusResponse:
  """Request cancellation; a running job stops before its next stage."""
  job = await orchestrator.cancel(job_id, owner_id)
  logger.info("Cancel requested owner_id=%s job_id=%s state=%s", owner_id, job_id, job.state.value)
  return JobStatusResponse.from_record(job)
