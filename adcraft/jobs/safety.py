"""Post-generation content policy checks with an audit trail."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from adcraft.ai.capabilities import ModerationCapability, ModerationSubject
from adcraft.jobs.models import JobRecord, Stage
from adcraft.utils.ids import generate_audit_id
from adcraft.utils.time import now_iso

logger = logging.getLogger(__name__)

MODERATION_UNAVAILABLE = "moderation_unavailable"
BLOCKED_TERM = "blocked_term"
CAPTION_REF = "caption"


@dataclass(frozen=True)
class SafetyVerdict:
  safe: bool
  reason: str | None = None


@dataclass(frozen=True)
class SafetyAuditRecord:
  """One check outcome, appended regardless of how the job ends."""

  audit_id: str
  job_id: str
  stage: Stage
  subject_ref: str
  safe: bool
  reason: str | None
  strict: bool
  checked_at: str


class SafetyAuditSink(Protocol):
  async def append(self, record: SafetyAuditRecord) -> None:
    """Persist or forward one audit record."""


class SafetyValidator:
  """Check generated backgrounds and captions before a job may complete."""

  def __init__(self, moderation: ModerationCapability, audit_sink: SafetyAuditSink, *, blocked_terms: tuple[str, ...] = (), timeout: float = 15.0) -> None:
    self._moderation = moderation
    self._audit_sink = audit_sink
    self._blocked_terms = tuple(term.lower() for term in blocked_terms if term)
    self._timeout = timeout

  @property
  def timeout(self) -> float:
    return self._timeout

  def _blocked_term(self, text: str | None) -> str | None:
    if not text:
      return None
    lowered = text.lower()
    for term in self._blocked_terms:
      if term in lowered:
        return term
    return None

  async def _verdict(self, job_id: str, subject: ModerationSubject) -> SafetyVerdict:
    term = self._blocked_term(subject.text)
    if term is not None:
      return SafetyVerdict(safe=False, reason=BLOCKED_TERM)
    try:
      result = await asyncio.wait_for(self._moderation.moderate(subject), timeout=self._timeout)
    except Exception as exc:  # noqa: BLE001
      # An unanswered check must never let content through.
      logger.warning("Moderation failed for job %s stage=%s error_type=%s", job_id, subject.stage.value, type(exc).__name__)
      return SafetyVerdict(safe=False, reason=MODERATION_UNAVAILABLE)
    return SafetyVerdict(safe=bool(result.safe), reason=None if result.safe else (result.reason or "policy_violation"))

  async def _audit(self, job_id: str, subject: ModerationSubject, verdict: SafetyVerdict) -> None:
    record = SafetyAuditRecord(
      audit_id=generate_audit_id(),
      job_id=job_id,
      stage=subject.stage,
      subject_ref=subject.ref,
      safe=verdict.safe,
      reason=verdict.reason,
      strict=subject.strict,
      checked_at=now_iso(),
    )
    try:
      await self._audit_sink.append(record)
    except Exception:  # noqa: BLE001
      logger.warning("Safety audit append failed for job %s", job_id, exc_info=True)

  async def check(self, job_id: str, subject: ModerationSubject) -> SafetyVerdict:
    """Return the verdict for one output and record it in the audit log."""
    verdict = await self._verdict(job_id, subject)
    await self._audit(job_id, subject, verdict)
    if not verdict.safe:
      logger.info("Unsafe output job_id=%s stage=%s ref=%s reason=%s", job_id, subject.stage.value, subject.ref, verdict.reason)
    return verdict

  async def inspect(self, job: JobRecord) -> set[Stage]:
    """Check every generated output on the job and return the stages flagged unsafe.

    All variations are checked even after one fails so each gets an audit entry.
    """
    flagged: set[Stage] = set()
    for ref in job.variation_refs or ():
      strict = Stage.BACKGROUNDS in job.regenerated_stages
      verdict = await self.check(job.job_id, ModerationSubject(stage=Stage.BACKGROUNDS, ref=ref, strict=strict))
      if not verdict.safe:
        flagged.add(Stage.BACKGROUNDS)
    if job.caption_text is not None:
      strict = Stage.CAPTION in job.regenerated_stages
      verdict = await self.check(job.job_id, ModerationSubject(stage=Stage.CAPTION, ref=CAPTION_REF, text=job.caption_text, strict=strict))
      if not verdict.safe:
        flagged.add(Stage.CAPTION)
    return flagged
