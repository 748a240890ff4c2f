from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from adcraft.services.tasks.interface import TaskEnqueuer

logger = logging.getLogger(__name__)

JobRunner = Callable[[str], Awaitable[None]]


class InProcessEnqueuer(TaskEnqueuer):
  """Runs job executions as asyncio tasks on the current event loop."""

  def __init__(self, runner: JobRunner | None = None) -> None:
    self._runner = runner
    self._tasks: set[asyncio.Task[None]] = set()

  def bind(self, runner: JobRunner) -> None:
    """Attach the coroutine that executes a job."""
    self._runner = runner

  @property
  def pending(self) -> int:
    return len(self._tasks)

  async def enqueue(self, job_id: str) -> None:
    if self._runner is None:
      raise RuntimeError("InProcessEnqueuer has no job runner bound.")
    task = asyncio.create_task(self._run(self._runner, job_id), name=f"adcraft-job-{job_id}")
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)
    logger.debug("Scheduled in-process execution for job %s", job_id)

  async def _run(self, runner: JobRunner, job_id: str) -> None:
    try:
      await runner(job_id)
    except asyncio.CancelledError:
      logger.info("In-process execution cancelled for job %s", job_id)
      raise
    except Exception:
      logger.exception("In-process execution crashed for job %s", job_id)

  async def drain(self) -> None:
    """Wait until every scheduled execution, including ones they schedule, has finished."""
    while self._tasks:
      await asyncio.gather(*list(self._tasks), return_exceptions=True)

  async def shutdown(self) -> None:
    """Cancel outstanding executions; persisted state lets them resume later."""
    tasks = list(self._tasks)
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)
