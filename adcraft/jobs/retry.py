"""Retry decisions with exponential backoff for external stage calls."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass

from adcraft.config import Settings
from adcraft.jobs.models import FailureKind


@dataclass(frozen=True)
class RetryDecision:
  """Whether to try again, and how long to wait first."""

  should_retry: bool
  delay: float = 0.0


GIVE_UP = RetryDecision(should_retry=False, delay=0.0)


@dataclass(frozen=True)
class RetryPolicy:
  """
  Stateless backoff policy shared by every stage executor.

  ``attempt`` is the 1-based number of the attempt that just failed. Transient
  failures retry while ``attempt < max_attempts``; the wait before the next
  attempt is ``base_delay * 2 ** (attempt - 1)`` plus up to ``jitter_ratio`` of
  that value, capped at ``max_delay``. With ``jitter_ratio <= 1`` successive
  delays never decrease.
  """

  max_attempts: int = 3
  base_delay: float = 1.0
  max_delay: float = 30.0
  jitter_ratio: float = 0.25
  rng: Callable[[], float] = random.random

  def __post_init__(self) -> None:
    if self.max_attempts < 1:
      raise ValueError("max_attempts must be at least 1")
    if self.base_delay < 0 or self.max_delay < 0:
      raise ValueError("delays must not be negative")
    if not 0 <= self.jitter_ratio <= 1:
      raise ValueError("jitter_ratio must be between 0 and 1")

  @classmethod
  def from_settings(cls, settings: Settings) -> RetryPolicy:
    return cls(max_attempts=settings.retry_max_attempts, base_delay=settings.retry_base_delay_seconds, max_delay=settings.retry_max_delay_seconds, jitter_ratio=settings.retry_jitter_ratio)

  def backoff(self, attempt: int) -> float:
    """Return the jittered, capped wait after a failed attempt."""
    base = self.base_delay * (2 ** (attempt - 1))
    jitter = base * self.jitter_ratio * self.rng()
    return min(base + jitter, self.max_delay)

  def decide(self, attempt: int, failure_kind: FailureKind) -> RetryDecision:
    """Return whether a failed attempt should be retried."""
    if attempt < 1:
      raise ValueError("attempt must be 1-based")
    if failure_kind is FailureKind.PERMANENT:
      return GIVE_UP
    if attempt >= self.max_attempts:
      return GIVE_UP
    return RetryDecision(should_retry=True, delay=self.backoff(attempt))

  def max_total_delay(self) -> float:
    """Upper bound on the time one stage can spend sleeping between attempts."""
    total = 0.0
    for attempt in range(1, self.max_attempts):
      total += min(self.base_delay * (2 ** (attempt - 1)) * (1 + self.jitter_ratio), self.max_delay)
    return total
