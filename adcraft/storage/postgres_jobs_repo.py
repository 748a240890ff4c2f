"""Postgres-backed job store using SQLAlchemy conditional updates."""

from __future__ import annotations

import logging

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adcraft.jobs.errors import JobAlreadyExistsError, JobConflictError, JobNotFoundError
from adcraft.jobs.models import TERMINAL_STATES, AnalysisResult, FailureReason, JobRecord, JobState, Language, Stage
from adcraft.schema.jobs import CreativeJob
from adcraft.storage.jobs_repo import JobStore

logger = logging.getLogger(__name__)


def _record_to_values(record: JobRecord) -> dict:
  """Map the mutable part of a record onto column values."""
  return {
    "source_asset_ref": record.source_asset_ref,
    "language": record.language.value,
    "state": record.state.value,
    "attempts_json": dict(record.attempts),
    "analysis_json": record.analysis_result.to_dict() if record.analysis_result else None,
    "variation_refs_json": list(record.variation_refs) if record.variation_refs is not None else None,
    "caption_text": record.caption_text,
    "failure_reason": record.failure_reason.value if record.failure_reason else None,
    "needs_manual_category": record.needs_manual_category,
    "cancel_requested": record.cancel_requested,
    "admitted_at": record.admitted_at,
    "safety_flags_json": [stage.value for stage in record.safety_flags],
    "regenerated_stages_json": [stage.value for stage in record.regenerated_stages],
    "updated_at": record.updated_at,
    "completed_at": record.completed_at,
  }


def _model_to_record(row: CreativeJob) -> JobRecord:
  return JobRecord(
    job_id=row.job_id,
    owner_id=row.owner_id,
    source_asset_ref=row.source_asset_ref,
    language=Language(row.language),
    state=JobState(row.state),
    created_at=row.created_at,
    updated_at=row.updated_at,
    idempotency_key=row.idempotency_key,
    attempts={str(key): int(value) for key, value in (row.attempts_json or {}).items()},
    analysis_result=AnalysisResult.from_dict(row.analysis_json) if row.analysis_json else None,
    variation_refs=tuple(row.variation_refs_json) if row.variation_refs_json is not None else None,
    caption_text=row.caption_text,
    failure_reason=FailureReason(row.failure_reason) if row.failure_reason else None,
    needs_manual_category=bool(row.needs_manual_category),
    cancel_requested=bool(row.cancel_requested),
    admitted_at=row.admitted_at,
    safety_flags=tuple(Stage(value) for value in row.safety_flags_json or []),
    regenerated_stages=tuple(Stage(value) for value in row.regenerated_stages_json or []),
    completed_at=row.completed_at,
    version=int(row.version),
  )


class PostgresJobStore(JobStore):
  """Persist jobs to Postgres; every mutation is an UPDATE guarded by state and version."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    if session_factory is None:
      raise RuntimeError("Database not initialized")
    self._session_factory = session_factory

  async def create(self, job: JobRecord) -> str:
    async with self._session_factory() as session:
      row = CreativeJob(job_id=job.job_id, owner_id=job.owner_id, idempotency_key=job.idempotency_key, created_at=job.created_at, version=0, **_record_to_values(job))
      session.add(row)
      try:
        await session.commit()
      except IntegrityError as exc:
        await session.rollback()
        existing = None
        if job.idempotency_key is not None:
          existing = await self.find_by_idempotency_key(job.owner_id, job.idempotency_key)
        logger.info("Job create collided job_id=%s idempotency_key=%s", job.job_id, job.idempotency_key)
        if existing is not None:
          raise JobAlreadyExistsError(existing.job_id, idempotency_key=job.idempotency_key) from exc
        raise JobAlreadyExistsError(job.job_id) from exc
    return job.job_id

  async def get(self, job_id: str) -> JobRecord:
    async with self._session_factory() as session:
      row = await session.get(CreativeJob, job_id)
      if row is None:
        raise JobNotFoundError(job_id)
      return _model_to_record(row)

  async def compare_and_swap(self, job_id: str, expected_state: JobState, new_job: JobRecord) -> JobRecord:
    async with self._session_factory() as session:
      stmt = (
        update(CreativeJob)
        .where(CreativeJob.job_id == job_id, CreativeJob.state == expected_state.value, CreativeJob.version == new_job.version)
        .values(version=CreativeJob.version + 1, **_record_to_values(new_job))
        .execution_options(synchronize_session=False)
      )
      result = await session.execute(stmt)
      if result.rowcount == 1:
        await session.commit()
        row = await session.get(CreativeJob, job_id, populate_existing=True)
        return _model_to_record(row)

      await session.rollback()
      current = await session.get(CreativeJob, job_id)
      if current is None:
        raise JobNotFoundError(job_id)
      raise JobConflictError(job_id, expected_state=expected_state.value, actual_state=current.state)

  async def delete(self, job_id: str) -> None:
    async with self._session_factory() as session:
      result = await session.execute(delete(CreativeJob).where(CreativeJob.job_id == job_id))
      await session.commit()
      if result.rowcount == 0:
        raise JobNotFoundError(job_id)

  async def find_by_idempotency_key(self, owner_id: str, idempotency_key: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = select(CreativeJob).where(CreativeJob.owner_id == owner_id, CreativeJob.idempotency_key == idempotency_key)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return _model_to_record(row) if row is not None else None

  async def list_unfinished(self, limit: int = 100) -> list[JobRecord]:
    terminal = [state.value for state in TERMINAL_STATES]
    async with self._session_factory() as session:
      stmt = select(CreativeJob).where(CreativeJob.state.not_in(terminal)).order_by(CreativeJob.created_at.asc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [_model_to_record(row) for row in rows]
