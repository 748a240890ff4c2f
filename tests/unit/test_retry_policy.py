import pytest

from adcraft.jobs.models import FailureKind
from adcraft.jobs.retry import RetryPolicy


def test_permanent_failures_are_never_retried():
  policy = RetryPolicy()
  decision = policy.decide(1, FailureKind.PERMANENT)
  assert decision.should_retry is False


def test_transient_failures_retry_until_budget_is_spent():
  policy = RetryPolicy(max_attempts=3, rng=lambda: 0.0)
  assert policy.decide(1, FailureKind.TRANSIENT).should_retry is True
  assert policy.decide(2, FailureKind.TRANSIENT).should_retry is True
  assert policy.decide(3, FailureKind.TRANSIENT).should_retry is False


def test_delay_doubles_without_jitter():
  policy = RetryPolicy(base_delay=1.0, max_delay=30.0, rng=lambda: 0.0)
  assert policy.decide(1, FailureKind.TRANSIENT).delay == 1.0
  assert policy.decide(2, FailureKind.TRANSIENT).delay == 2.0


@pytest.mark.parametrize("jitter_ratio", [0.0, 0.25, 1.0])
def test_delays_never_decrease_even_with_worst_case_jitter(jitter_ratio):
  # Maximum jitter on the earlier attempt, none on the later one.
  draws = iter([1.0, 0.0, 1.0, 0.0, 1.0, 0.0])
  policy = RetryPolicy(max_attempts=6, base_delay=0.5, max_delay=100.0, jitter_ratio=jitter_ratio, rng=lambda: next(draws))
  delays = [policy.decide(attempt, FailureKind.TRANSIENT).delay for attempt in range(1, 6)]
  assert delays == sorted(delays)


def test_delay_is_capped():
  policy = RetryPolicy(max_attempts=10, base_delay=4.0, max_delay=10.0, rng=lambda: 1.0)
  assert policy.decide(5, FailureKind.TRANSIENT).delay == 10.0


def test_max_total_delay_covers_full_jitter():
  policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter_ratio=0.25)
  assert policy.max_total_delay() == pytest.approx(1.25 + 2.5)


def test_attempt_numbers_are_one_based():
  with pytest.raises(ValueError):
    RetryPolicy().decide(0, FailureKind.TRANSIENT)


@pytest.mark.parametrize(
  "kwargs",
  [
    {"max_attempts": 0},
    {"base_delay": -1.0},
    {"jitter_ratio": 1.5},
  ],
)
def test_invalid_policy_is_rejected(kwargs):
  with pytest.raises(ValueError):
    RetryPolicy(**kwargs)


def test_from_settings(settings_factory):
  policy = RetryPolicy.from_settings(settings_factory(retry_max_attempts=4, retry_base_delay_seconds=0.5))
  assert policy.max_attempts == 4
  assert policy.base_delay == 0.5
