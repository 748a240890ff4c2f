"""Shared fixtures: scripted AI capabilities and wired orchestrators."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

import pytest

from adcraft.ai.capabilities import BackgroundPrompt, CaptionPrompt, ModerationResult, ModerationSubject, StageCapabilities
from adcraft.config import Settings
from adcraft.core.database import build_engine, build_session_factory, create_schema
from adcraft.jobs.gate import InMemoryGateBackend
from adcraft.jobs.models import Language
from adcraft.jobs.orchestrator import Orchestrator, build_orchestrator
from adcraft.services.tasks.local import InProcessEnqueuer
from adcraft.storage.memory_jobs_repo import InMemoryJobStore
from adcraft.telemetry.safety_audit import RecordingSafetyAuditSink

CAPTION_TEXT = "Handwoven cotton kurta in indigo, breathable and festive-ready for every season."
STRICT_CAPTION_TEXT = "Soft indigo cotton kurta, handwoven by local artisans for comfortable daily wear."


@pytest.fixture
def anyio_backend():
  return "asyncio"


def make_settings(**overrides: Any) -> Settings:
  base = Settings(
    environment="test",
    debug=False,
    allowed_origins=("http://localhost",),
    log_dir="./logs",
    log_max_bytes=1_000_000,
    log_backup_count=1,
    log_http_4xx=False,
    pg_dsn=None,
    pg_connect_timeout=5,
    job_store_backend="memory",
    owner_concurrency_limit=5,
    global_inflight_limit=100,
    retry_max_attempts=3,
    retry_base_delay_seconds=1.0,
    retry_max_delay_seconds=30.0,
    retry_jitter_ratio=0.25,
    analysis_timeout_seconds=5.0,
    background_timeout_seconds=5.0,
    caption_timeout_seconds=5.0,
    moderation_timeout_seconds=5.0,
    confidence_floor=0.6,
    caption_min_chars=50,
    caption_max_chars=150,
    variation_count=3,
    safety_blocked_terms=("counterfeit",),
    task_service_provider="inprocess",
    base_url=None,
    task_secret="task-secret",
  )
  return replace(base, **overrides)


class _Scripted:
  """Pops queued outcomes; exceptions are raised, anything else is returned."""

  def __init__(self, default: Any) -> None:
    self.default = default
    self.script: list[Any] = []
    self.release: asyncio.Event | None = None

  def queue(self, *outcomes: Any) -> None:
    self.script.extend(outcomes)

  def hold(self) -> asyncio.Event:
    """Block calls until the returned event is set."""
    self.release = asyncio.Event()
    return self.release

  async def _next(self) -> Any:
    if self.release is not None:
      await self.release.wait()
    outcome = self.script.pop(0) if self.script else self.default
    if isinstance(outcome, BaseException):
      raise outcome
    return outcome


class FakeAnalysis(_Scripted):
  def __init__(self) -> None:
    super().__init__({"category": "apparel", "confidence": 0.92, "attributes": {"color": "indigo"}})
    self.calls: list[str] = []

  async def analyze(self, asset_ref: str) -> Mapping[str, Any]:
    self.calls.append(asset_ref)
    return await self._next()


class FakeBackgrounds(_Scripted):
  def __init__(self) -> None:
    super().__init__(None)
    self.prompts: list[BackgroundPrompt] = []

  async def generate(self, prompt: BackgroundPrompt, count: int) -> list[str]:
    self.prompts.append(prompt)
    outcome = await self._next()
    if outcome is None:
      prefix = "bg-strict" if prompt.strict else "bg"
      return [f"{prefix}-{index}" for index in range(1, count + 1)]
    return outcome


class FakeCaption(_Scripted):
  def __init__(self) -> None:
    super().__init__(None)
    self.prompts: list[CaptionPrompt] = []
    self.languages: list[Language] = []

  async def generate(self, prompt: CaptionPrompt, language: Language) -> str:
    self.prompts.append(prompt)
    self.languages.append(language)
    outcome = await self._next()
    if outcome is None:
      return STRICT_CAPTION_TEXT if prompt.strict else CAPTION_TEXT
    return outcome


class FakeModeration:
  def __init__(self) -> None:
    self.unsafe_refs: set[str] = set()
    self.unsafe_texts: set[str] = set()
    self.fail_with: BaseException | None = None
    self.subjects: list[ModerationSubject] = []

  async def moderate(self, subject: ModerationSubject) -> ModerationResult:
    self.subjects.append(subject)
    if self.fail_with is not None:
      raise self.fail_with
    if subject.ref in self.unsafe_refs or (subject.text is not None and subject.text in self.unsafe_texts):
      return ModerationResult(safe=False, reason="policy_violation")
    return ModerationResult(safe=True)


class SleepRecorder:
  """Stands in for asyncio.sleep so retries run instantly."""

  def __init__(self) -> None:
    self.delays: list[float] = []

  async def __call__(self, delay: float) -> None:
    self.delays.append(delay)
    await asyncio.sleep(0)


class Harness:
  def __init__(self, settings: Settings, **overrides: Any) -> None:
    self.settings = settings
    self.analysis = FakeAnalysis()
    self.backgrounds = FakeBackgrounds()
    self.caption = FakeCaption()
    self.moderation = FakeModeration()
    self.capabilities = StageCapabilities(analysis=self.analysis, backgrounds=self.backgrounds, caption=self.caption, moderation=self.moderation)
    self.audit = RecordingSafetyAuditSink()
    self.sleep = SleepRecorder()
    self.enqueuer = overrides.pop("enqueuer", None) or InProcessEnqueuer()
    self.store = overrides.pop("store", None) or InMemoryJobStore()
    self.gate_backend = overrides.pop("gate_backend", None) or InMemoryGateBackend()
    self.orchestrator: Orchestrator = build_orchestrator(
      settings,
      self.capabilities,
      store=self.store,
      gate_backend=self.gate_backend,
      audit_sink=self.audit,
      enqueuer=self.enqueuer,
      sleep=self.sleep,
    )

  async def submit(self, owner_id: str = "owner-1", asset: str = "s3://uploads/kurta.jpg", language: Language = Language.HINDI, key: str | None = None) -> str:
    return await self.orchestrator.submit(owner_id, asset, language, key)

  async def run(self, owner_id: str = "owner-1", asset: str = "s3://uploads/kurta.jpg", language: Language = Language.HINDI):
    job_id = await self.submit(owner_id, asset, language)
    await self.enqueuer.drain()
    return await self.orchestrator.get_status(job_id)


@pytest.fixture
def settings() -> Settings:
  return make_settings()


@pytest.fixture
def harness(settings: Settings) -> Harness:
  return Harness(settings)


@pytest.fixture
async def session_factory(tmp_path):
  engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'adcraft.db'}")
  await create_schema(engine)
  try:
    yield build_session_factory(engine)
  finally:
    await engine.dispose()


@pytest.fixture
def settings_factory():
  return make_settings


@pytest.fixture
def harness_factory():
  def _build(**setting_overrides: Any) -> Harness:
    store = setting_overrides.pop("store", None)
    gate_backend = setting_overrides.pop("gate_backend", None)
    enqueuer = setting_overrides.pop("enqueuer", None)
    return Harness(make_settings(**setting_overrides), store=store, gate_backend=gate_backend, enqueuer=enqueuer)

  return _build
