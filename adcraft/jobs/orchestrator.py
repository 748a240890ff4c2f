"""Pipeline engine that drives creative jobs through their lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import replace
from typing import Any

from adcraft.ai.capabilities import StageCapabilities
from adcraft.config import Settings
from adcraft.core.database import get_session_factory
from adcraft.jobs.errors import InvalidTransitionError, JobAccessDeniedError, JobAlreadyExistsError, JobConflictError, JobNotFoundError, ThrottledError
from adcraft.jobs.gate import AdmissionTicket, ConcurrencyGate, GateBackend, InMemoryGateBackend, QueuedHandle
from adcraft.jobs.models import PIPELINE_ORDER, STAGE_STATES, FailureReason, JobRecord, JobState, Language, Stage, can_transition
from adcraft.jobs.retry import RetryPolicy
from adcraft.jobs.safety import SafetyAuditSink, SafetyValidator
from adcraft.jobs.stages import Sleeper, StageExecutors, StageResult, build_stage_executors
from adcraft.services.tasks.factory import get_task_enqueuer
from adcraft.services.tasks.interface import TaskEnqueuer
from adcraft.services.tasks.local import InProcessEnqueuer
from adcraft.storage.jobs_repo import JobStore
from adcraft.storage.memory_jobs_repo import InMemoryJobStore
from adcraft.utils.ids import generate_job_id
from adcraft.utils.time import now_iso

logger = logging.getLogger(__name__)

# Initial check plus one re-check after each generative stage is regenerated.
_MAX_SAFETY_PASSES = 3


class _Superseded(Exception):
  """Another execution moved the job on; this one stops without further writes."""


class _CancelRequested(Exception):
  """The caller asked for cancellation while a stage was retrying."""


def _stage_order(stages: Iterable[Stage]) -> tuple[Stage, ...]:
  ranked = sorted(set(stages), key=lambda stage: PIPELINE_ORDER.index(STAGE_STATES[stage]))
  return tuple(ranked)


def _unchanged(fresh: JobRecord, snapshot: JobRecord) -> bool:
  """True when fresh differs from snapshot only in fields other callers set without advancing the job."""
  return replace(fresh, cancel_requested=snapshot.cancel_requested, admitted_at=snapshot.admitted_at, updated_at=snapshot.updated_at, version=snapshot.version) == snapshot


class Orchestrator:
  """
  Explicit state machine over persisted job records.

  Each call to ``advance`` re-reads the job, performs exactly one step for its
  current state and persists the outcome with a compare-and-swap keyed on the
  prior state. No state survives between steps except what the store holds,
  so any worker can resume any job.
  """

  def __init__(self, store: JobStore, gate: ConcurrencyGate, stages: StageExecutors, safety: SafetyValidator, enqueuer: TaskEnqueuer, *, retry_policy: RetryPolicy, sleep: Sleeper | None = None) -> None:
    self._store = store
    self._gate = gate
    self._stages = stages
    self._safety = safety
    self._enqueuer = enqueuer
    self._retry_policy = retry_policy
    self._sleep = sleep or asyncio.sleep

  @property
  def store(self) -> JobStore:
    return self._store

  @property
  def gate(self) -> ConcurrencyGate:
    return self._gate

  @property
  def enqueuer(self) -> TaskEnqueuer:
    return self._enqueuer

  async def _swap(self, job: JobRecord, *, guarded: bool = False, **changes: Any) -> JobRecord:
    """Persist changes on top of the job, reapplying them if only the version moved.

    A conflict where the stored state differs means another execution has
    already advanced the job, so this one is superseded. ``guarded`` writes
    carry results computed from ``job``; they are reapplied only when the
    fresh record still matches it apart from the cancel flag and admission
    time, since the same state can be re-entered by a regeneration.
    """
    target = changes.get("state")
    if target is not None and target is not job.state and not can_transition(job.state, target):
      raise InvalidTransitionError(f"Illegal transition {job.state.value} -> {target.value} for job {job.job_id}")

    current = job
    while True:
      updated = replace(current, updated_at=now_iso(), **changes)
      try:
        return await self._store.compare_and_swap(current.job_id, current.state, updated)
      except JobConflictError:
        fresh = await self._store.get(current.job_id)
        if fresh.state is not current.state:
          logger.info("Job %s superseded: expected %s, found %s", current.job_id, current.state.value, fresh.state.value)
          raise _Superseded(current.job_id) from None
        if guarded and not _unchanged(fresh, current):
          logger.info("Job %s superseded: %s was rewritten by another execution", current.job_id, current.state.value)
          raise _Superseded(current.job_id) from None
        current = fresh

  async def _load(self, job_id: str, owner_id: str | None) -> JobRecord:
    job = await self._store.get(job_id)
    if owner_id is not None and job.owner_id != owner_id:
      raise JobAccessDeniedError(job_id)
    return job

  async def submit(self, owner_id: str, source_asset_ref: str, language: Language | str, idempotency_key: str | None = None) -> str:
    """Create a job and admit it through the concurrency gate.

    Returns the existing job id when the owner reuses an idempotency key.
    Raises ThrottledError, leaving no job behind, when the global ceiling is hit.
    """
    if not owner_id:
      raise ValueError("owner_id is required")
    if not source_asset_ref:
      raise ValueError("source_asset_ref is required")
    language = Language(language)

    if idempotency_key:
      existing = await self._store.find_by_idempotency_key(owner_id, idempotency_key)
      if existing is not None:
        logger.info("Idempotent submit owner_id=%s key=%s -> job %s", owner_id, idempotency_key, existing.job_id)
        return existing.job_id

    # Admission comes first so a throttled submission never writes a record.
    job_id = generate_job_id()
    admission = await self._gate.admit(owner_id, job_id)

    now = now_iso()
    job = JobRecord(
      job_id=job_id,
      owner_id=owner_id,
      source_asset_ref=source_asset_ref,
      language=language,
      state=JobState.PENDING,
      created_at=now,
      updated_at=now,
      idempotency_key=idempotency_key or None,
    )
    try:
      await self._store.create(job)
    except Exception as exc:
      await self._abandon(owner_id, job_id)
      if isinstance(exc, JobAlreadyExistsError) and exc.idempotency_key is not None:
        # Lost a race with a concurrent submit carrying the same key.
        return exc.job_id
      raise

    if isinstance(admission, QueuedHandle):
      # A release may have promoted it while the record was being written.
      admission = await self._gate.admit(owner_id, job_id)
    if isinstance(admission, AdmissionTicket):
      await self._start(job_id)
    else:
      logger.info("Job %s queued for owner %s at position %d", job_id, owner_id, admission.position)
    return job_id

  async def _abandon(self, owner_id: str, job_id: str) -> None:
    """Give back the gate entry of a submission whose record was never written."""
    if await self._gate.withdraw(owner_id, job_id):
      return
    await self._release(owner_id, job_id)

  async def get_status(self, job_id: str, owner_id: str | None = None) -> JobRecord:
    """Return the persisted job. Never mutates."""
    return await self._load(job_id, owner_id)

  async def cancel(self, job_id: str, owner_id: str | None = None) -> JobRecord:
    """Request cooperative cancellation.

    A job still waiting for admission is withdrawn and failed at once. A
    running job is flagged and fails before its next step starts.
    """
    job = await self._load(job_id, owner_id)
    if job.is_terminal:
      return job

    if job.admitted_at is None and await self._gate.withdraw(job.owner_id, job.job_id):
      try:
        return await self._swap(job, state=JobState.FAILED, failure_reason=FailureReason.CANCELLED, cancel_requested=True, completed_at=now_iso())
      except _Superseded:
        return await self._store.get(job_id)

    current = job
    while not current.cancel_requested:
      try:
        current = await self._swap(current, cancel_requested=True)
      except _Superseded:
        current = await self._store.get(job_id)
        if current.is_terminal:
          return current
    logger.info("Cancellation requested for job %s in state %s", job_id, current.state.value)
    return current

  async def _start(self, job_id: str) -> None:
    """Record admission and dispatch the first execution."""
    try:
      job = await self._store.get(job_id)
    except JobNotFoundError:
      # Promoted before its submission wrote the record; submit starts it.
      logger.info("Promoted job %s has no record yet", job_id)
      return
    if job.is_terminal:
      # Promoted after it already ended; hand the slot to the next in line.
      await self._release(job.owner_id, job.job_id)
      return
    if job.admitted_at is None:
      try:
        job = await self._swap(job, admitted_at=now_iso())
      except _Superseded:
        return
    await self._dispatch(job.job_id)

  async def _dispatch(self, job_id: str) -> None:
    try:
      await self._enqueuer.enqueue(job_id)
    except Exception:
      # The job keeps its slot; resume_unfinished dispatches it again.
      logger.exception("Failed to dispatch job %s", job_id)

  async def _release(self, owner_id: str, job_id: str) -> str | None:
    """Free the job's slot, start the queued job it admits and return that job's id.

    Releases are idempotent, so a failing backend is retried with the stage
    backoff. When every attempt fails the slot stays held until
    resume_unfinished reconciles it.
    """
    attempt = 0
    while True:
      attempt += 1
      try:
        ticket = await self._gate.release(owner_id, job_id)
        break
      except Exception:
        if attempt >= self._retry_policy.max_attempts:
          logger.exception("Gate release for job %s failed %d times; left for reconciliation", job_id, attempt)
          return None
        logger.warning("Gate release for job %s failed on attempt %d; retrying", job_id, attempt, exc_info=True)
        await self._sleep(self._retry_policy.backoff(attempt))

    if ticket is None:
      return None
    await self._start(ticket.job_id)
    return ticket.job_id

  async def _finish(self, job: JobRecord, state: JobState, reason: FailureReason | None = None, *, guarded: bool = False, **changes: Any) -> JobRecord:
    """Write a terminal state and only then free the gate slot."""
    final = await self._swap(job, guarded=guarded, state=state, failure_reason=reason, completed_at=now_iso(), **changes)
    if state is JobState.COMPLETE:
      logger.info("Job %s complete", final.job_id)
    else:
      logger.warning("Job %s failed reason=%s", final.job_id, reason.value if reason else None)
    if final.admitted_at is not None:
      await self._release(final.owner_id, final.job_id)
    return final

  async def advance(self, job_id: str) -> JobRecord | None:
    """Run one step for the job's current state.

    Returns the job after the step, or None when another execution
    superseded this one.
    """
    job = await self._store.get(job_id)
    if job.is_terminal or job.admitted_at is None:
      return job

    try:
      if job.cancel_requested:
        return await self._finish(job, JobState.FAILED, FailureReason.CANCELLED)
      return await self._step(job)
    except _Superseded:
      return None
    except _CancelRequested:
      fresh = await self._store.get(job_id)
      if fresh.is_terminal:
        return fresh
      try:
        return await self._finish(fresh, JobState.FAILED, FailureReason.CANCELLED)
      except _Superseded:
        return None
    except Exception:
      logger.exception("Unexpected error advancing job %s", job_id)
      fresh = await self._store.get(job_id)
      if fresh.is_terminal:
        return fresh
      try:
        return await self._finish(fresh, JobState.FAILED, FailureReason.INTERNAL_ERROR)
      except _Superseded:
        return None

  async def _step(self, job: JobRecord) -> JobRecord:
    if job.state is JobState.PENDING:
      return await self._swap(job, state=JobState.ANALYZING, attempts={})
    if job.state is JobState.ANALYZING:
      return await self._run_stage(job, Stage.ANALYSIS)
    if job.state is JobState.GENERATING_BACKGROUNDS:
      return await self._run_stage(job, Stage.BACKGROUNDS)
    if job.state is JobState.GENERATING_CAPTION:
      return await self._run_stage(job, Stage.CAPTION)
    if job.state is JobState.VALIDATING_SAFETY:
      return await self._validate_safety(job)
    raise InvalidTransitionError(f"No step defined for state {job.state.value}")

  async def _run_stage(self, job: JobRecord, stage: Stage) -> JobRecord:
    executor = self._stages.for_stage(stage)
    strict = stage in job.safety_flags
    current = job

    async def record_attempt(attempt: int) -> None:
      nonlocal current
      current = await self._swap(current, guarded=True, attempts={**current.attempts, stage.value: attempt})
      if current.cancel_requested:
        raise _CancelRequested(current.job_id)

    result = await executor.run(job, strict=strict, on_attempt=record_attempt)
    if not result.success:
      return await self._fail_stage(current, result)
    return await self._complete_stage(current, stage, result)

  async def _fail_stage(self, job: JobRecord, result: StageResult) -> JobRecord:
    changes: dict[str, Any] = {"needs_manual_category": result.needs_manual_category}
    if result.stage is Stage.ANALYSIS and result.output is not None:
      changes["analysis_result"] = result.output
    return await self._finish(job, JobState.FAILED, result.failure_reason, guarded=True, **changes)

  async def _complete_stage(self, job: JobRecord, stage: Stage, result: StageResult) -> JobRecord:
    if stage is Stage.ANALYSIS:
      return await self._swap(job, guarded=True, state=JobState.GENERATING_BACKGROUNDS, analysis_result=result.output, attempts={})

    flags = tuple(flag for flag in job.safety_flags if flag is not stage)
    regenerated = job.regenerated_stages
    if stage in job.safety_flags:
      regenerated = _stage_order((*regenerated, stage))
      logger.info("Regenerated %s for job %s", stage.value, job.job_id)

    if stage is Stage.BACKGROUNDS:
      # A regeneration pass re-runs captions only when they were flagged too.
      regenerating = stage in job.safety_flags
      needs_caption = job.caption_text is None or Stage.CAPTION in flags or not regenerating
      next_state = JobState.GENERATING_CAPTION if needs_caption else JobState.VALIDATING_SAFETY
      return await self._swap(job, guarded=True, state=next_state, variation_refs=result.output, safety_flags=flags, regenerated_stages=regenerated, attempts={})

    return await self._swap(job, guarded=True, state=JobState.VALIDATING_SAFETY, caption_text=result.output, safety_flags=flags, regenerated_stages=regenerated, attempts={})

  async def _validate_safety(self, job: JobRecord) -> JobRecord:
    flagged = await self._safety.inspect(job)
    if not flagged:
      return await self._finish(job, JobState.COMPLETE, guarded=True, safety_flags=())

    exhausted = flagged & set(job.regenerated_stages)
    if exhausted:
      logger.warning("Job %s unsafe after regeneration of %s", job.job_id, ", ".join(stage.value for stage in _stage_order(exhausted)))
      return await self._finish(job, JobState.FAILED, FailureReason.SAFETY_REJECTED, guarded=True, safety_flags=_stage_order(flagged))

    flags = _stage_order(flagged)
    target = STAGE_STATES[flags[0]]
    logger.info("Job %s flagged unsafe for %s; regenerating with strict parameters", job.job_id, ", ".join(stage.value for stage in flags))
    return await self._swap(job, guarded=True, state=target, safety_flags=flags, attempts={})

  async def run_job(self, job_id: str) -> JobRecord | None:
    """Advance the job until it is terminal, still queued, or superseded."""
    while True:
      job = await self.advance(job_id)
      if job is None or job.is_terminal or job.admitted_at is None:
        return job

  async def resume_unfinished(self, limit: int = 100) -> int:
    """Re-dispatch non-terminal jobs after a restart and return how many were dispatched.

    Gate entries left behind by ended jobs are freed first. Jobs that never
    recorded admission go back through the gate, which recognizes requests it
    already holds.
    """
    started = await self._reconcile_gate()
    dispatched = len(started)
    for job in await self._store.list_unfinished(limit):
      if job.job_id in started:
        continue
      if job.admitted_at is not None:
        await self._dispatch(job.job_id)
        dispatched += 1
        continue
      try:
        admission = await self._gate.admit(job.owner_id, job.job_id)
      except ThrottledError:
        logger.warning("Resume of job %s throttled; leaving it pending", job.job_id)
        continue
      if isinstance(admission, AdmissionTicket):
        await self._start(job.job_id)
        dispatched += 1
    logger.info("Resumed %d unfinished jobs", dispatched)
    return dispatched

  async def _reconcile_gate(self) -> set[str]:
    """Free slots and queue entries whose jobs are terminal or were never written.

    Returns the ids of queued jobs started by the freed slots.
    """
    started: set[str] = set()
    # Queued entries go first so a freed slot never promotes a stale one.
    for entry in sorted(await self._gate.holders(), key=lambda entry: not entry.queued):
      try:
        job = await self._store.get(entry.job_id)
      except JobNotFoundError:
        job = None
      if job is not None and not job.is_terminal:
        continue
      logger.warning("Reconciling stale gate entry owner_id=%s job_id=%s queued=%s", entry.owner_id, entry.job_id, entry.queued)
      if entry.queued:
        await self._gate.withdraw(entry.owner_id, entry.job_id)
        continue
      promoted = await self._release(entry.owner_id, entry.job_id)
      if promoted is not None:
        started.add(promoted)
    return started

  def max_latency_seconds(self) -> float:
    """Upper bound on execution time once a job is admitted, for callers timing out their polling.

    Covers every stage at its full retry budget, one regeneration of each
    generative stage, and every safety pass. Time spent queued for admission
    is not included.
    """
    checks_per_pass = self._stages.backgrounds.variation_count + 1
    safety = self._safety.timeout * checks_per_pass * _MAX_SAFETY_PASSES
    return self._stages.max_latency_seconds(self._retry_policy) + safety


def build_orchestrator(
  settings: Settings,
  capabilities: StageCapabilities,
  *,
  store: JobStore | None = None,
  gate_backend: GateBackend | None = None,
  audit_sink: SafetyAuditSink | None = None,
  enqueuer: TaskEnqueuer | None = None,
  sleep: Sleeper | None = None,
) -> Orchestrator:
  """Wire an orchestrator from settings, using SQL-backed state when configured."""
  use_postgres = settings.job_store_backend == "postgres"
  session_factory = get_session_factory() if use_postgres else None
  if use_postgres and session_factory is None:
    raise RuntimeError("Postgres backend selected but no database DSN configured.")

  if store is None:
    if use_postgres:
      from adcraft.storage.postgres_jobs_repo import PostgresJobStore

      store = PostgresJobStore(session_factory)
    else:
      store = InMemoryJobStore()

  if gate_backend is None:
    if use_postgres:
      from adcraft.storage.postgres_gate_repo import PostgresGateBackend

      gate_backend = PostgresGateBackend(session_factory)
    else:
      gate_backend = InMemoryGateBackend()

  if audit_sink is None:
    from adcraft.telemetry.safety_audit import LoggingSafetyAuditSink, PostgresSafetyAuditSink

    audit_sink = PostgresSafetyAuditSink(session_factory) if use_postgres else LoggingSafetyAuditSink()

  retry_policy = RetryPolicy.from_settings(settings)
  stages = build_stage_executors(capabilities, settings, retry_policy, sleep=sleep)
  safety = SafetyValidator(capabilities.moderation, audit_sink, blocked_terms=settings.safety_blocked_terms, timeout=settings.moderation_timeout_seconds)
  gate = ConcurrencyGate.from_settings(settings, gate_backend)
  enqueuer = enqueuer or get_task_enqueuer(settings)

  orchestrator = Orchestrator(store, gate, stages, safety, enqueuer, retry_policy=retry_policy, sleep=sleep)
  if isinstance(enqueuer, InProcessEnqueuer):
    enqueuer.bind(orchestrator.run_job)
  return orchestrator
