import pytest

from adcraft.ai.capabilities import ModerationResult, ModerationSubject
from adcraft.jobs.models import JobRecord, JobState, Language, Stage
from adcraft.jobs.safety import BLOCKED_TERM, MODERATION_UNAVAILABLE, SafetyValidator
from adcraft.telemetry.safety_audit import LoggingSafetyAuditSink, RecordingSafetyAuditSink


def _job(**changes) -> JobRecord:
  values = {
    "job_id": "job-9",
    "owner_id": "owner-1",
    "source_asset_ref": "s3://uploads/mug.jpg",
    "language": Language.ENGLISH,
    "state": JobState.VALIDATING_SAFETY,
    "created_at": "2026-01-01T00:00:00Z",
    "updated_at": "2026-01-01T00:00:00Z",
    "variation_refs": ("bg-1", "bg-2", "bg-3"),
    "caption_text": "Hand-thrown ceramic mug with a speckled glaze, perfect for slow mornings.",
  }
  values.update(changes)
  return JobRecord(**values)


class BrokenSink:
  async def append(self, record):
    raise RuntimeError("audit store down")


@pytest.mark.anyio
async def test_safe_outputs_are_audited(harness):
  validator = SafetyValidator(harness.moderation, harness.audit)
  flagged = await validator.inspect(_job())
  assert flagged == set()
  records = harness.audit.for_job("job-9")
  assert len(records) == 4
  assert all(record.safe for record in records)
  assert {record.stage for record in records} == {Stage.BACKGROUNDS, Stage.CAPTION}


@pytest.mark.anyio
async def test_one_unsafe_variation_flags_backgrounds(harness):
  harness.moderation.unsafe_refs.add("bg-2")
  validator = SafetyValidator(harness.moderation, harness.audit)
  flagged = await validator.inspect(_job())
  assert flagged == {Stage.BACKGROUNDS}
  unsafe = [record for record in harness.audit.records if not record.safe]
  assert [record.subject_ref for record in unsafe] == ["bg-2"]
  assert unsafe[0].reason == "policy_violation"


@pytest.mark.anyio
async def test_blocked_term_in_caption_skips_moderation_call(harness):
  validator = SafetyValidator(harness.moderation, harness.audit, blocked_terms=("Counterfeit",))
  verdict = await validator.check("job-9", ModerationSubject(stage=Stage.CAPTION, ref="caption", text="Genuine counterfeit designer bag at half price!"))
  assert not verdict.safe
  assert verdict.reason == BLOCKED_TERM
  assert harness.moderation.subjects == []


@pytest.mark.anyio
async def test_failed_moderation_is_never_safe(harness):
  harness.moderation.fail_with = ConnectionError("moderation down")
  validator = SafetyValidator(harness.moderation, harness.audit)
  flagged = await validator.inspect(_job())
  assert flagged == {Stage.BACKGROUNDS, Stage.CAPTION}
  assert {record.reason for record in harness.audit.records} == {MODERATION_UNAVAILABLE}


@pytest.mark.anyio
async def test_audit_sink_failure_does_not_fail_check(harness):
  validator = SafetyValidator(harness.moderation, BrokenSink())
  verdict = await validator.check("job-9", ModerationSubject(stage=Stage.BACKGROUNDS, ref="bg-1"))
  assert verdict.safe


@pytest.mark.anyio
async def test_regenerated_stage_is_checked_strictly(harness):
  validator = SafetyValidator(harness.moderation, harness.audit)
  await validator.inspect(_job(regenerated_stages=(Stage.CAPTION,)))
  strict_by_stage = {subject.stage: subject.strict for subject in harness.moderation.subjects}
  assert strict_by_stage == {Stage.BACKGROUNDS: False, Stage.CAPTION: True}


@pytest.mark.anyio
async def test_logging_sink_accepts_records(caplog):
  recording = RecordingSafetyAuditSink()
  validator = SafetyValidator(_AlwaysSafe(), recording)
  await validator.check("job-1", ModerationSubject(stage=Stage.BACKGROUNDS, ref="bg-1"))
  with caplog.at_level("INFO", logger="adcraft.safety_audit"):
    await LoggingSafetyAuditSink().append(recording.records[0])
  assert "safety_check job_id=job-1 stage=backgrounds ref=bg-1 safe=True" in caplog.text


class _AlwaysSafe:
  async def moderate(self, subject):
    return ModerationResult(safe=True)
