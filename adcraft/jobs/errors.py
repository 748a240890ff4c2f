"""Exceptions raised by the job orchestration core."""

from __future__ import annotations


class AdcraftError(Exception):
  """Base class for orchestration core errors."""


class JobNotFoundError(AdcraftError):
  """Raised when a job id is unknown to the store."""

  def __init__(self, job_id: str) -> None:
    super().__init__(f"Job {job_id} not found.")
    self.job_id = job_id


class JobAlreadyExistsError(AdcraftError):
  """Raised when creating a job whose id or idempotency key is already taken."""

  def __init__(self, job_id: str, *, idempotency_key: str | None = None) -> None:
    super().__init__(f"Job {job_id} already exists.")
    self.job_id = job_id
    self.idempotency_key = idempotency_key


class JobConflictError(AdcraftError):
  """Raised when a compare-and-swap finds the stored record changed underneath it."""

  def __init__(self, job_id: str, *, expected_state: str, actual_state: str | None) -> None:
    super().__init__(f"Job {job_id} conflict: expected state {expected_state}, found {actual_state}.")
    self.job_id = job_id
    self.expected_state = expected_state
    self.actual_state = actual_state


class JobAccessDeniedError(AdcraftError):
  """Raised when a caller asks for a job owned by someone else."""

  def __init__(self, job_id: str) -> None:
    super().__init__(f"Access to job {job_id} denied.")
    self.job_id = job_id


class InvalidTransitionError(AdcraftError):
  """Raised when code attempts an illegal lifecycle edge."""


class ThrottledError(AdcraftError):
  """Raised at submission time when the global in-flight ceiling is reached."""

  def __init__(self, *, in_flight: int, limit: int) -> None:
    super().__init__(f"Global in-flight limit reached ({in_flight}/{limit}). Retry later.")
    self.in_flight = in_flight
    self.limit = limit
