from __future__ import annotations

from adcraft.config import Settings
from adcraft.services.tasks.http import HttpTaskEnqueuer
from adcraft.services.tasks.interface import TaskEnqueuer
from adcraft.services.tasks.local import InProcessEnqueuer


def get_task_enqueuer(settings: Settings) -> TaskEnqueuer:
  """Factory to get the configured task enqueuer."""
  if settings.task_service_provider == "http":
    return HttpTaskEnqueuer(settings)
  return InProcessEnqueuer()
