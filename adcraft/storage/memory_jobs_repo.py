"""Process-local job store used for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from dataclasses import replace

from adcraft.jobs.errors import JobAlreadyExistsError, JobConflictError, JobNotFoundError
from adcraft.jobs.models import TERMINAL_STATES, JobRecord, JobState
from adcraft.storage.jobs_repo import JobStore


class InMemoryJobStore(JobStore):
  """Dictionary-backed store with the same conditional-update semantics as the SQL store."""

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}
    self._idempotency: dict[tuple[str, str], str] = {}
    self._lock = asyncio.Lock()

  async def create(self, job: JobRecord) -> str:
    async with self._lock:
      if job.job_id in self._jobs:
        raise JobAlreadyExistsError(job.job_id)
      if job.idempotency_key is not None:
        key = (job.owner_id, job.idempotency_key)
        existing_id = self._idempotency.get(key)
        if existing_id is not None:
          raise JobAlreadyExistsError(existing_id, idempotency_key=job.idempotency_key)
        self._idempotency[key] = job.job_id
      self._jobs[job.job_id] = replace(job, version=0)
      return job.job_id

  async def get(self, job_id: str) -> JobRecord:
    record = self._jobs.get(job_id)
    if record is None:
      raise JobNotFoundError(job_id)
    return record

  async def compare_and_swap(self, job_id: str, expected_state: JobState, new_job: JobRecord) -> JobRecord:
    async with self._lock:
      stored = self._jobs.get(job_id)
      if stored is None:
        raise JobNotFoundError(job_id)
      if stored.state is not expected_state or stored.version != new_job.version:
        raise JobConflictError(job_id, expected_state=expected_state.value, actual_state=stored.state.value)
      # Identity and ownership never change through a swap.
      updated = replace(new_job, job_id=stored.job_id, owner_id=stored.owner_id, idempotency_key=stored.idempotency_key, created_at=stored.created_at, version=stored.version + 1)
      self._jobs[job_id] = updated
      return updated

  async def delete(self, job_id: str) -> None:
    async with self._lock:
      record = self._jobs.pop(job_id, None)
      if record is None:
        raise JobNotFoundError(job_id)
      if record.idempotency_key is not None:
        self._idempotency.pop((record.owner_id, record.idempotency_key), None)

  async def find_by_idempotency_key(self, owner_id: str, idempotency_key: str) -> JobRecord | None:
    job_id = self._idempotency.get((owner_id, idempotency_key))
    if job_id is None:
      return None
    return self._jobs.get(job_id)

  async def list_unfinished(self, limit: int = 100) -> list[JobRecord]:
    unfinished = [record for record in self._jobs.values() if record.state not in TERMINAL_STATES]
    unfinished.sort(key=lambda record: record.created_at)
    return unfinished[:limit]
