"""Request and response payloads for the job API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from adcraft.jobs.models import FailureReason, JobRecord, JobState, Language


class SubmitJobRequest(BaseModel):
  """Request payload for creating a creative generation job."""

  source_asset_ref: StrictStr = Field(min_length=1, max_length=1024, description="Reference to the uploaded product image in object storage.")
  language: Language = Field(description="Caption output language.", examples=["hi"])
  idempotency_key: StrictStr | None = Field(default=None, min_length=1, max_length=128, description="Optional client-generated key; resubmitting it returns the original job.")
  model_config = ConfigDict(extra="forbid")


class JobCreateResponse(BaseModel):
  """Response payload for job creation."""

  job_id: StrictStr
  state: JobState


class AnalysisPayload(BaseModel):
  category: StrictStr
  confidence: float
  attributes: dict[str, Any] = Field(default_factory=dict)


class JobStatusResponse(BaseModel):
  """Status payload for a creative generation job."""

  job_id: StrictStr
  state: JobState
  language: Language
  source_asset_ref: StrictStr
  attempts: dict[str, int] = Field(default_factory=dict)
  analysis: AnalysisPayload | None = None
  variation_refs: list[StrictStr] | None = None
  caption_text: StrictStr | None = None
  failure_reason: FailureReason | None = None
  needs_manual_category: bool = False
  cancel_requested: bool = False
  regenerated_stages: list[StrictStr] = Field(default_factory=list)
  created_at: StrictStr
  updated_at: StrictStr
  completed_at: StrictStr | None = None

  @classmethod
  def from_record(cls, job: JobRecord) -> JobStatusResponse:
    analysis = None
    if job.analysis_result is not None:
      analysis = AnalysisPayload(category=job.analysis_result.category.value, confidence=job.analysis_result.confidence, attributes=dict(job.analysis_result.attributes))
    return cls(
      job_id=job.job_id,
      state=job.state,
      language=job.language,
      source_asset_ref=job.source_asset_ref,
      attempts=dict(job.attempts),
      analysis=analysis,
      variation_refs=list(job.variation_refs) if job.variation_refs is not None else None,
      caption_text=job.caption_text,
      failure_reason=job.failure_reason,
      needs_manual_category=job.needs_manual_category,
      cancel_requested=job.cancel_requested,
      regenerated_stages=[stage.value for stage in job.regenerated_stages],
      created_at=job.created_at,
      updated_at=job.updated_at,
      completed_at=job.completed_at,
    )


class TaskPayload(BaseModel):
  job_id: StrictStr = Field(min_length=1)
