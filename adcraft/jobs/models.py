"""Domain models for creative generation jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobState(str, Enum):
  """Lifecycle states in pipeline order."""

  PENDING = "Pending"
  ANALYZING = "Analyzing"
  GENERATING_BACKGROUNDS = "GeneratingBackgrounds"
  GENERATING_CAPTION = "GeneratingCaption"
  VALIDATING_SAFETY = "ValidatingSafety"
  COMPLETE = "Complete"
  FAILED = "Failed"


class Stage(str, Enum):
  """Pipeline stages backed by an external AI capability."""

  ANALYSIS = "analysis"
  BACKGROUNDS = "backgrounds"
  CAPTION = "caption"


class FailureKind(str, Enum):
  """Retry classification for a failed call."""

  TRANSIENT = "transient"
  PERMANENT = "permanent"


class FailureReason(str, Enum):
  """Closed set of reasons a job can end in Failed."""

  ANALYSIS_UNAVAILABLE = "AnalysisUnavailable"
  ANALYSIS_REJECTED = "AnalysisRejected"
  INVALID_ANALYSIS = "InvalidAnalysis"
  LOW_CONFIDENCE = "LowConfidence"
  BACKGROUNDS_UNAVAILABLE = "BackgroundsUnavailable"
  BACKGROUNDS_REJECTED = "BackgroundsRejected"
  INSUFFICIENT_VARIATIONS = "InsufficientVariations"
  CAPTION_UNAVAILABLE = "CaptionUnavailable"
  CAPTION_REJECTED = "CaptionRejected"
  CAPTION_LENGTH_OUT_OF_RANGE = "CaptionLengthOutOfRange"
  SAFETY_REJECTED = "SafetyRejected"
  CANCELLED = "Cancelled"
  INTERNAL_ERROR = "InternalError"


class Language(str, Enum):
  """Supported caption output languages."""

  ENGLISH = "en"
  HINDI = "hi"
  BENGALI = "bn"
  TAMIL = "ta"
  TELUGU = "te"
  MARATHI = "mr"
  GUJARATI = "gu"
  KANNADA = "kn"
  MALAYALAM = "ml"
  PUNJABI = "pa"


class Category(str, Enum):
  """Primary product categories the analysis capability may report."""

  APPAREL = "apparel"
  FOOTWEAR = "footwear"
  JEWELRY = "jewelry"
  BEAUTY = "beauty"
  ELECTRONICS = "electronics"
  HOME_DECOR = "home_decor"
  FOOD_BEVERAGE = "food_beverage"
  HANDICRAFT = "handicraft"
  OTHER = "other"


PIPELINE_ORDER: tuple[JobState, ...] = (
  JobState.PENDING,
  JobState.ANALYZING,
  JobState.GENERATING_BACKGROUNDS,
  JobState.GENERATING_CAPTION,
  JobState.VALIDATING_SAFETY,
  JobState.COMPLETE,
)
TERMINAL_STATES = frozenset({JobState.COMPLETE, JobState.FAILED})
STAGE_STATES: dict[Stage, JobState] = {
  Stage.ANALYSIS: JobState.ANALYZING,
  Stage.BACKGROUNDS: JobState.GENERATING_BACKGROUNDS,
  Stage.CAPTION: JobState.GENERATING_CAPTION,
}
REGENERATION_TARGETS = frozenset({JobState.GENERATING_BACKGROUNDS, JobState.GENERATING_CAPTION})


def is_terminal(state: JobState) -> bool:
  """Return True for Complete and Failed."""
  return state in TERMINAL_STATES


def can_transition(current: JobState, target: JobState) -> bool:
  """Return True when moving from current to target is a legal lifecycle edge."""
  if current in TERMINAL_STATES:
    return False
  if target is JobState.FAILED:
    return True
  if current is JobState.VALIDATING_SAFETY and target in REGENERATION_TARGETS:
    return True
  return PIPELINE_ORDER.index(target) > PIPELINE_ORDER.index(current)


@dataclass(frozen=True)
class AnalysisResult:
  """Validated output of the image analysis stage."""

  category: Category
  confidence: float
  attributes: dict[str, Any] = field(default_factory=dict)

  def to_dict(self) -> dict[str, Any]:
    return {"category": self.category.value, "confidence": self.confidence, "attributes": dict(self.attributes)}

  @classmethod
  def from_dict(cls, payload: dict[str, Any]) -> AnalysisResult:
    return cls(category=Category(payload["category"]), confidence=float(payload["confidence"]), attributes=dict(payload.get("attributes") or {}))


@dataclass(frozen=True)
class JobRecord:
  """Persisted state of one creative generation job.

  Records are immutable snapshots; every change goes through the job store's
  compare-and-swap with a copy made by ``dataclasses.replace``.
  """

  job_id: str
  owner_id: str
  source_asset_ref: str
  language: Language
  state: JobState
  created_at: str
  updated_at: str
  idempotency_key: str | None = None
  attempts: dict[str, int] = field(default_factory=dict)
  analysis_result: AnalysisResult | None = None
  variation_refs: tuple[str, ...] | None = None
  caption_text: str | None = None
  failure_reason: FailureReason | None = None
  needs_manual_category: bool = False
  cancel_requested: bool = False
  admitted_at: str | None = None
  safety_flags: tuple[Stage, ...] = ()
  regenerated_stages: tuple[Stage, ...] = ()
  completed_at: str | None = None
  version: int = 0

  @property
  def is_terminal(self) -> bool:
    return is_terminal(self.state)

  def attempts_for(self, stage: Stage) -> int:
    """Return the persisted attempt count for a stage."""
    return int(self.attempts.get(stage.value, 0))
