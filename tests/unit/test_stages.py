import asyncio

import httpx
import pytest

from adcraft.ai.errors import PermanentCapabilityError, TransientCapabilityError
from adcraft.jobs.models import AnalysisResult, Category, FailureKind, FailureReason, JobRecord, JobState, Language, Stage
from adcraft.jobs.retry import RetryPolicy
from adcraft.jobs.stages import AnalysisStage, BackgroundStage, CaptionStage, build_stage_executors


def _job(**changes) -> JobRecord:
  values = {
    "job_id": "job-1",
    "owner_id": "owner-1",
    "source_asset_ref": "s3://uploads/saree.jpg",
    "language": Language.BENGALI,
    "state": JobState.ANALYZING,
    "created_at": "2026-01-01T00:00:00Z",
    "updated_at": "2026-01-01T00:00:00Z",
    "analysis_result": AnalysisResult(category=Category.APPAREL, confidence=0.9, attributes={"fabric": "silk"}),
  }
  values.update(changes)
  return JobRecord(**values)


@pytest.fixture
def policy():
  return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter_ratio=0.25, rng=lambda: 0.5)


@pytest.mark.anyio
async def test_analysis_success(harness, policy):
  stage = AnalysisStage(harness.analysis, confidence_floor=0.6, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(analysis_result=None))
  assert result.success
  assert result.output.category is Category.APPAREL
  assert result.attempts == 1
  assert harness.analysis.calls == ["s3://uploads/saree.jpg"]


@pytest.mark.anyio
async def test_low_confidence_is_permanent_and_flags_manual_category(harness, policy):
  harness.analysis.queue({"category": "jewelry", "confidence": 0.41})
  stage = AnalysisStage(harness.analysis, confidence_floor=0.6, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(analysis_result=None))
  assert not result.success
  assert result.failure_kind is FailureKind.PERMANENT
  assert result.failure_reason is FailureReason.LOW_CONFIDENCE
  assert result.needs_manual_category
  assert result.output.category is Category.JEWELRY
  assert len(harness.analysis.calls) == 1


@pytest.mark.anyio
async def test_unknown_category_exhausts_budget_as_invalid_analysis(harness, policy):
  harness.analysis.default = {"category": "spaceship", "confidence": 0.99}
  stage = AnalysisStage(harness.analysis, confidence_floor=0.6, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(analysis_result=None))
  assert result.failure_reason is FailureReason.INVALID_ANALYSIS
  assert result.attempts == 3


@pytest.mark.anyio
async def test_transient_failures_retry_with_non_decreasing_delays(harness, policy):
  harness.analysis.default = TransientCapabilityError("service unavailable")
  stage = AnalysisStage(harness.analysis, confidence_floor=0.6, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(analysis_result=None))

  assert len(harness.analysis.calls) == 3
  assert result.attempts == 3
  assert result.failure_kind is FailureKind.PERMANENT
  assert result.failure_reason is FailureReason.ANALYSIS_UNAVAILABLE
  assert len(harness.sleep.delays) == 2
  assert harness.sleep.delays == sorted(harness.sleep.delays)


@pytest.mark.anyio
async def test_permanent_service_error_is_not_retried(harness, policy):
  request = httpx.Request("POST", "https://vision.example/analyze")
  response = httpx.Response(400, request=request)
  harness.analysis.queue(httpx.HTTPStatusError("bad request", request=request, response=response))
  stage = AnalysisStage(harness.analysis, confidence_floor=0.6, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(analysis_result=None))
  assert result.failure_reason is FailureReason.ANALYSIS_REJECTED
  assert result.attempts == 1
  assert harness.sleep.delays == []


@pytest.mark.anyio
async def test_timeout_counts_as_transient(harness, policy):
  release = harness.analysis.hold()
  stage = AnalysisStage(harness.analysis, confidence_floor=0.6, timeout=0.01, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(analysis_result=None))
  release.set()
  assert result.failure_reason is FailureReason.ANALYSIS_UNAVAILABLE
  assert result.attempts == 3


@pytest.mark.anyio
async def test_attempts_continue_from_persisted_count(harness, policy):
  harness.analysis.default = TransientCapabilityError("rate limit")
  stage = AnalysisStage(harness.analysis, confidence_floor=0.6, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(analysis_result=None, attempts={Stage.ANALYSIS.value: 2}))
  assert result.attempts == 3
  assert len(harness.analysis.calls) == 1

  exhausted = await stage.run(_job(analysis_result=None, attempts={Stage.ANALYSIS.value: 3}))
  assert not exhausted.success
  assert len(harness.analysis.calls) == 1


@pytest.mark.anyio
async def test_on_attempt_sees_every_attempt(harness, policy):
  harness.analysis.queue(TransientCapabilityError("timeout"))
  seen: list[int] = []

  async def record(attempt: int) -> None:
    seen.append(attempt)

  stage = AnalysisStage(harness.analysis, confidence_floor=0.6, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(analysis_result=None), on_attempt=record)
  assert result.success
  assert seen == [1, 2]


@pytest.mark.anyio
async def test_backgrounds_keep_first_three_distinct(harness, policy):
  harness.backgrounds.queue(["a", "a", "b", "", "c", "d"])
  stage = BackgroundStage(harness.backgrounds, variation_count=3, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(state=JobState.GENERATING_BACKGROUNDS))
  assert result.output == ("a", "b", "c")
  prompt = harness.backgrounds.prompts[0]
  assert prompt.category == "apparel"
  assert prompt.attributes == {"fabric": "silk"}
  assert prompt.strict is False


@pytest.mark.anyio
async def test_too_few_variations_retries_then_fails(harness, policy):
  harness.backgrounds.default = ["a", "b", "b"]
  stage = BackgroundStage(harness.backgrounds, variation_count=3, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(state=JobState.GENERATING_BACKGROUNDS))
  assert result.failure_reason is FailureReason.INSUFFICIENT_VARIATIONS
  assert len(harness.backgrounds.prompts) == 3


@pytest.mark.anyio
async def test_strict_flag_reaches_background_prompt(harness, policy):
  stage = BackgroundStage(harness.backgrounds, variation_count=3, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(state=JobState.GENERATING_BACKGROUNDS), strict=True)
  assert result.output == ("bg-strict-1", "bg-strict-2", "bg-strict-3")


@pytest.mark.anyio
async def test_caption_length_out_of_range_adjusts_target(harness, policy):
  harness.caption.queue("x" * 220, "too short")
  stage = CaptionStage(harness.caption, min_chars=50, max_chars=150, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(state=JobState.GENERATING_CAPTION))

  assert result.success
  assert result.attempts == 3
  targets = [prompt.target_chars for prompt in harness.caption.prompts]
  assert targets[0] == 100
  assert targets[1] < targets[0]
  assert targets[2] > targets[1]
  assert all(50 <= target <= 150 for target in targets)
  assert harness.caption.languages == [Language.BENGALI] * 3


@pytest.mark.anyio
async def test_caption_length_never_fixed_fails_permanently(harness, policy):
  harness.caption.default = "tiny"
  stage = CaptionStage(harness.caption, min_chars=50, max_chars=150, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(state=JobState.GENERATING_CAPTION))
  assert result.failure_reason is FailureReason.CAPTION_LENGTH_OUT_OF_RANGE
  assert result.failure_kind is FailureKind.PERMANENT
  assert result.attempts == 3


@pytest.mark.anyio
async def test_permanent_caption_error(harness, policy):
  harness.caption.queue(PermanentCapabilityError("prompt rejected"))
  stage = CaptionStage(harness.caption, min_chars=50, max_chars=150, timeout=1.0, retry_policy=policy, sleep=harness.sleep)
  result = await stage.run(_job(state=JobState.GENERATING_CAPTION))
  assert result.failure_reason is FailureReason.CAPTION_REJECTED
  assert result.attempts == 1


def test_max_latency_counts_regeneration(harness):
  policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter_ratio=0.0)
  stages = build_stage_executors(harness.capabilities, harness.settings, policy)
  # analysis once, backgrounds and caption twice, each at 3 attempts plus 3s of backoff
  assert stages.max_latency_seconds(policy) == pytest.approx((5 * 3 + 3) * 5)


@pytest.mark.anyio
async def test_cancellation_propagates(harness, policy):
  release = harness.analysis.hold()
  stage = AnalysisStage(harness.analysis, confidence_floor=0.6, timeout=5.0, retry_policy=policy, sleep=harness.sleep)
  task = asyncio.create_task(stage.run(_job(analysis_result=None)))
  await asyncio.sleep(0)
  task.cancel()
  with pytest.raises(asyncio.CancelledError):
    await task
  release.set()
