"""Contracts for the external AI services the pipeline calls.

Transport lives outside this package; deployments supply adapters that satisfy
these protocols. Adapters signal failures with ``TransientCapabilityError`` /
``PermanentCapabilityError`` or let transport exceptions propagate for
``classify_failure`` to sort out.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from adcraft.jobs.models import Language, Stage


@dataclass(frozen=True)
class BackgroundPrompt:
  """Input projection for background generation."""

  source_asset_ref: str
  category: str
  attributes: Mapping[str, Any] = field(default_factory=dict)
  strict: bool = False


@dataclass(frozen=True)
class CaptionPrompt:
  """Input projection for caption generation.

  ``target_chars`` is the length the model is asked to aim for; the caption
  stage moves it when an output falls outside the accepted range.
  """

  category: str
  attributes: Mapping[str, Any] = field(default_factory=dict)
  target_chars: int = 100
  min_chars: int = 50
  max_chars: int = 150
  strict: bool = False


@dataclass(frozen=True)
class ModerationSubject:
  """One generated output to check against content policy."""

  stage: Stage
  ref: str
  text: str | None = None
  strict: bool = False


@dataclass(frozen=True)
class ModerationResult:
  safe: bool
  reason: str | None = None


class ImageAnalysisCapability(Protocol):
  async def analyze(self, asset_ref: str) -> Mapping[str, Any]:
    """Return ``{"category", "confidence", "attributes"}`` for an uploaded image."""


class BackgroundCapability(Protocol):
  async def generate(self, prompt: BackgroundPrompt, count: int) -> Sequence[str]:
    """Return references to generated background variations."""


class CaptionCapability(Protocol):
  async def generate(self, prompt: CaptionPrompt, language: Language) -> str:
    """Return caption text in the requested language."""


class ModerationCapability(Protocol):
  async def moderate(self, subject: ModerationSubject) -> ModerationResult:
    """Return a policy verdict for one generated output."""


@dataclass(frozen=True)
class StageCapabilities:
  """Bundle of adapters a deployment wires into the orchestrator."""

  analysis: ImageAnalysisCapability
  backgrounds: BackgroundCapability
  caption: CaptionCapability
  moderation: ModerationCapability
