"""Storage interface for creative generation jobs."""

from __future__ import annotations

from typing import Protocol

from adcraft.jobs.models import JobRecord, JobState


class JobStore(Protocol):
  """Repository contract for durable job persistence.

  ``compare_and_swap`` is the only mutation path after ``create``. It succeeds
  only when the stored record is still in ``expected_state`` and still carries
  the version ``new_job`` was derived from; the stored copy gets the next version.
  """

  async def create(self, job: JobRecord) -> str:
    """Persist a new job; raise JobAlreadyExistsError on id or idempotency collision."""

  async def get(self, job_id: str) -> JobRecord:
    """Fetch a job; raise JobNotFoundError when absent."""

  async def compare_and_swap(self, job_id: str, expected_state: JobState, new_job: JobRecord) -> JobRecord:
    """Replace a job atomically; raise JobConflictError or JobNotFoundError."""

  async def delete(self, job_id: str) -> None:
    """Remove a job; raise JobNotFoundError when absent."""

  async def find_by_idempotency_key(self, owner_id: str, idempotency_key: str) -> JobRecord | None:
    """Return the job an owner created with this idempotency key, if any."""

  async def list_unfinished(self, limit: int = 100) -> list[JobRecord]:
    """Return non-terminal jobs, oldest first, for crash recovery."""
