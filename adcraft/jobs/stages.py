"""Stage executors: one external call each, with timeout, retry and output validation."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from adcraft.ai.capabilities import BackgroundCapability, BackgroundPrompt, CaptionCapability, CaptionPrompt, ImageAnalysisCapability, StageCapabilities
from adcraft.ai.errors import classify_failure
from adcraft.config import Settings
from adcraft.jobs.models import AnalysisResult, Category, FailureKind, FailureReason, JobRecord, Stage
from adcraft.jobs.retry import RetryPolicy

logger = logging.getLogger(__name__)

ParamsT = TypeVar("ParamsT")
OutputT = TypeVar("OutputT")
AttemptCallback = Callable[[int], Awaitable[None]]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class StageResult:
  """Outcome of running one stage to success or to a final failure."""

  stage: Stage
  success: bool
  output: Any = None
  failure_kind: FailureKind | None = None
  failure_reason: FailureReason | None = None
  attempts: int = 0
  needs_manual_category: bool = False


class StageValidationError(Exception):
  """The service answered, but the output is unusable.

  Retryable validation failures consume an attempt like a transient error but
  are not counted as service errors.
  """

  def __init__(self, message: str, *, reason: FailureReason, retryable: bool = True, output: Any = None, needs_manual_category: bool = False) -> None:
    super().__init__(message)
    self.reason = reason
    self.retryable = retryable
    self.output = output
    self.needs_manual_category = needs_manual_category


class StageExecutor(ABC, Generic[ParamsT, OutputT]):
  """Wrap one external capability call with timeout, retry and validation."""

  stage: Stage
  unavailable_reason: FailureReason
  rejected_reason: FailureReason

  def __init__(self, *, timeout: float, retry_policy: RetryPolicy, sleep: Sleeper | None = None) -> None:
    if timeout <= 0:
      raise ValueError("timeout must be positive")
    self._timeout = timeout
    self._retry_policy = retry_policy
    self._sleep = sleep or asyncio.sleep

  @property
  def timeout(self) -> float:
    return self._timeout

  @abstractmethod
  def project(self, job: JobRecord, *, strict: bool) -> ParamsT:
    """Build the call parameters from the job."""

  @abstractmethod
  async def call(self, params: ParamsT, job: JobRecord) -> Any:
    """Invoke the external capability once."""

  @abstractmethod
  def validate(self, raw: Any, params: ParamsT) -> OutputT:
    """Return the validated output or raise StageValidationError."""

  def adjust(self, params: ParamsT, error: StageValidationError) -> ParamsT:
    """Return parameters for the next attempt after a validation failure."""
    return params

  def _failure(self, *, attempts: int, reason: FailureReason, output: Any = None, needs_manual_category: bool = False) -> StageResult:
    return StageResult(stage=self.stage, success=False, output=output, failure_kind=FailureKind.PERMANENT, failure_reason=reason, attempts=attempts, needs_manual_category=needs_manual_category)

  async def run(self, job: JobRecord, *, strict: bool = False, on_attempt: AttemptCallback | None = None) -> StageResult:
    """Run attempts until the output validates or the retry budget is spent.

    Attempt numbering continues from the count persisted on the job so a
    resumed execution does not get a fresh budget.
    """
    params = self.project(job, strict=strict)
    attempt = job.attempts_for(self.stage)
    if attempt >= self._retry_policy.max_attempts:
      logger.warning("Stage %s for job %s resumed with exhausted budget (%d attempts)", self.stage.value, job.job_id, attempt)
      return self._failure(attempts=attempt, reason=self.unavailable_reason)

    while True:
      attempt += 1
      if on_attempt is not None:
        await on_attempt(attempt)

      try:
        raw = await asyncio.wait_for(self.call(params, job), timeout=self._timeout)
        output = self.validate(raw, params)
        logger.info("Stage %s succeeded for job %s on attempt %d", self.stage.value, job.job_id, attempt)
        return StageResult(stage=self.stage, success=True, output=output, attempts=attempt)

      except StageValidationError as exc:
        if not exc.retryable:
          logger.info("Stage %s for job %s rejected output: %s", self.stage.value, job.job_id, exc)
          return self._failure(attempts=attempt, reason=exc.reason, output=exc.output, needs_manual_category=exc.needs_manual_category)
        logger.warning("Stage %s for job %s attempt %d failed validation: %s", self.stage.value, job.job_id, attempt, exc)
        kind = FailureKind.TRANSIENT
        exhausted_reason = exc.reason
        params = self.adjust(params, exc)

      except asyncio.TimeoutError:
        logger.warning("Stage %s for job %s attempt %d timed out after %.1fs", self.stage.value, job.job_id, attempt, self._timeout)
        kind = FailureKind.TRANSIENT
        exhausted_reason = self.unavailable_reason

      except Exception as exc:  # noqa: BLE001
        kind = classify_failure(exc)
        logger.warning("Stage %s for job %s attempt %d failed kind=%s error_type=%s", self.stage.value, job.job_id, attempt, kind.value, type(exc).__name__, exc_info=kind is FailureKind.PERMANENT)
        exhausted_reason = self.unavailable_reason if kind is FailureKind.TRANSIENT else self.rejected_reason

      decision = self._retry_policy.decide(attempt, kind)
      if not decision.should_retry:
        logger.error("Stage %s for job %s giving up after %d attempts reason=%s", self.stage.value, job.job_id, attempt, exhausted_reason.value)
        return self._failure(attempts=attempt, reason=exhausted_reason)

      logger.info("Retrying stage %s for job %s after %.2fs", self.stage.value, job.job_id, decision.delay)
      await self._sleep(decision.delay)


class _AnalysisPayload(BaseModel):
  category: Category
  confidence: float = Field(ge=0.0, le=1.0)
  attributes: dict[str, Any] = Field(default_factory=dict)
  model_config = ConfigDict(extra="ignore")


class AnalysisStage(StageExecutor[str, AnalysisResult]):
  """Classify the uploaded image into a product category."""

  stage = Stage.ANALYSIS
  unavailable_reason = FailureReason.ANALYSIS_UNAVAILABLE
  rejected_reason = FailureReason.ANALYSIS_REJECTED

  def __init__(self, capability: ImageAnalysisCapability, *, confidence_floor: float, timeout: float, retry_policy: RetryPolicy, sleep: Sleeper | None = None) -> None:
    super().__init__(timeout=timeout, retry_policy=retry_policy, sleep=sleep)
    self._capability = capability
    self._confidence_floor = confidence_floor

  def project(self, job: JobRecord, *, strict: bool) -> str:
    return job.source_asset_ref

  async def call(self, params: str, job: JobRecord) -> Any:
    return await self._capability.analyze(params)

  def validate(self, raw: Any, params: str) -> AnalysisResult:
    try:
      payload = _AnalysisPayload.model_validate(raw)
    except ValidationError as exc:
      raise StageValidationError(f"Malformed analysis output ({exc.error_count()} errors).", reason=FailureReason.INVALID_ANALYSIS) from exc

    result = AnalysisResult(category=payload.category, confidence=payload.confidence, attributes=payload.attributes)
    if payload.confidence < self._confidence_floor:
      raise StageValidationError(
        f"Confidence {payload.confidence:.2f} below floor {self._confidence_floor:.2f}; needs manual category.",
        reason=FailureReason.LOW_CONFIDENCE,
        retryable=False,
        output=result,
        needs_manual_category=True,
      )
    return result


class BackgroundStage(StageExecutor[BackgroundPrompt, tuple[str, ...]]):
  """Generate the fixed number of distinct background variations."""

  stage = Stage.BACKGROUNDS
  unavailable_reason = FailureReason.BACKGROUNDS_UNAVAILABLE
  rejected_reason = FailureReason.BACKGROUNDS_REJECTED

  def __init__(self, capability: BackgroundCapability, *, variation_count: int, timeout: float, retry_policy: RetryPolicy, sleep: Sleeper | None = None) -> None:
    super().__init__(timeout=timeout, retry_policy=retry_policy, sleep=sleep)
    self._capability = capability
    self._variation_count = variation_count

  @property
  def variation_count(self) -> int:
    return self._variation_count

  def project(self, job: JobRecord, *, strict: bool) -> BackgroundPrompt:
    analysis = _require_analysis(job)
    return BackgroundPrompt(source_asset_ref=job.source_asset_ref, category=analysis.category.value, attributes=dict(analysis.attributes), strict=strict)

  async def call(self, params: BackgroundPrompt, job: JobRecord) -> Any:
    return await self._capability.generate(params, self._variation_count)

  def validate(self, raw: Any, params: BackgroundPrompt) -> tuple[str, ...]:
    if isinstance(raw, str) or not isinstance(raw, Sequence):
      raise StageValidationError("Background output is not a list of references.", reason=FailureReason.INSUFFICIENT_VARIATIONS)
    distinct = list(dict.fromkeys(ref for ref in raw if isinstance(ref, str) and ref.strip()))
    if len(distinct) < self._variation_count:
      raise StageValidationError(f"Expected {self._variation_count} distinct variations, got {len(distinct)}.", reason=FailureReason.INSUFFICIENT_VARIATIONS)
    return tuple(distinct[: self._variation_count])


class CaptionStage(StageExecutor[CaptionPrompt, str]):
  """Generate caption text whose length falls within the accepted range."""

  stage = Stage.CAPTION
  unavailable_reason = FailureReason.CAPTION_UNAVAILABLE
  rejected_reason = FailureReason.CAPTION_REJECTED

  def __init__(self, capability: CaptionCapability, *, min_chars: int, max_chars: int, timeout: float, retry_policy: RetryPolicy, sleep: Sleeper | None = None) -> None:
    super().__init__(timeout=timeout, retry_policy=retry_policy, sleep=sleep)
    if min_chars > max_chars:
      raise ValueError("min_chars must not exceed max_chars")
    self._capability = capability
    self._min_chars = min_chars
    self._max_chars = max_chars

  def project(self, job: JobRecord, *, strict: bool) -> CaptionPrompt:
    analysis = _require_analysis(job)
    target = (self._min_chars + self._max_chars) // 2
    return CaptionPrompt(category=analysis.category.value, attributes=dict(analysis.attributes), target_chars=target, min_chars=self._min_chars, max_chars=self._max_chars, strict=strict)

  async def call(self, params: CaptionPrompt, job: JobRecord) -> Any:
    return await self._capability.generate(params, job.language)

  def validate(self, raw: Any, params: CaptionPrompt) -> str:
    if not isinstance(raw, str):
      raise StageValidationError("Caption output is not text.", reason=FailureReason.CAPTION_LENGTH_OUT_OF_RANGE, output=0)
    text = raw.strip()
    if not self._min_chars <= len(text) <= self._max_chars:
      raise StageValidationError(f"Caption length {len(text)} outside [{self._min_chars}, {self._max_chars}].", reason=FailureReason.CAPTION_LENGTH_OUT_OF_RANGE, output=len(text))
    return text

  def adjust(self, params: CaptionPrompt, error: StageValidationError) -> CaptionPrompt:
    length = error.output if isinstance(error.output, int) else params.target_chars
    if length > self._max_chars:
      target = params.target_chars - (length - self._max_chars) - 10
    elif length < self._min_chars:
      target = params.target_chars + (self._min_chars - length) + 10
    else:
      target = params.target_chars
    target = max(self._min_chars, min(self._max_chars, target))
    return replace(params, target_chars=target)


def _require_analysis(job: JobRecord) -> AnalysisResult:
  if job.analysis_result is None:
    raise RuntimeError(f"Job {job.job_id} has no analysis result")
  return job.analysis_result


@dataclass(frozen=True)
class StageExecutors:
  analysis: AnalysisStage
  backgrounds: BackgroundStage
  caption: CaptionStage

  def for_stage(self, stage: Stage) -> StageExecutor:
    return {Stage.ANALYSIS: self.analysis, Stage.BACKGROUNDS: self.backgrounds, Stage.CAPTION: self.caption}[stage]

  def max_latency_seconds(self, retry_policy: RetryPolicy) -> float:
    """Worst-case time all stages can take, counting one regeneration of each generative stage."""
    per_attempt_budget = retry_policy.max_attempts
    backoff = retry_policy.max_total_delay()
    analysis = self.analysis.timeout * per_attempt_budget + backoff
    backgrounds = self.backgrounds.timeout * per_attempt_budget + backoff
    caption = self.caption.timeout * per_attempt_budget + backoff
    return analysis + 2 * backgrounds + 2 * caption


def build_stage_executors(capabilities: StageCapabilities, settings: Settings, retry_policy: RetryPolicy, *, sleep: Sleeper | None = None) -> StageExecutors:
  """Wire the three executors from settings."""
  return StageExecutors(
    analysis=AnalysisStage(capabilities.analysis, confidence_floor=settings.confidence_floor, timeout=settings.analysis_timeout_seconds, retry_policy=retry_policy, sleep=sleep),
    backgrounds=BackgroundStage(capabilities.backgrounds, variation_count=settings.variation_count, timeout=settings.background_timeout_seconds, retry_policy=retry_policy, sleep=sleep),
    caption=CaptionStage(capabilities.caption, min_chars=settings.caption_min_chars, max_chars=settings.caption_max_chars, timeout=settings.caption_timeout_seconds, retry_policy=retry_policy, sleep=sleep),
  )
