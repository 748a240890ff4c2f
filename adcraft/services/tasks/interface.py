from __future__ import annotations

from typing import Protocol


class TaskEnqueuer(Protocol):
  """Interface for dispatching job executions."""

  async def enqueue(self, job_id: str) -> None:
    """Schedule one execution of the job's pipeline."""
    ...
