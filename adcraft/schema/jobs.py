from __future__ import annotations

from sqlalchemy import JSON, Boolean, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from adcraft.core.database import Base

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class CreativeJob(Base):
  __tablename__ = "creative_jobs"
  __table_args__ = (
    UniqueConstraint("owner_id", "idempotency_key", name="ux_creative_jobs_owner_idempotency"),
    Index("ix_creative_jobs_state_created", "state", "created_at"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  source_asset_ref: Mapped[str] = mapped_column(String, nullable=False)
  language: Mapped[str] = mapped_column(String(8), nullable=False)
  state: Mapped[str] = mapped_column(String(32), nullable=False)
  version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  attempts_json: Mapped[dict] = mapped_column(JsonColumn, nullable=False, default=dict)
  analysis_json: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)
  variation_refs_json: Mapped[list | None] = mapped_column(JsonColumn, nullable=True)
  caption_text: Mapped[str | None] = mapped_column(Text, nullable=True)
  failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
  needs_manual_category: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  admitted_at: Mapped[str | None] = mapped_column(String, nullable=True)
  safety_flags_json: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
  regenerated_stages_json: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
  created_at: Mapped[str] = mapped_column(String, nullable=False)
  updated_at: Mapped[str] = mapped_column(String, nullable=False)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)


class GateGlobal(Base):
  """Single row locked to serialize admission decisions across processes."""

  __tablename__ = "gate_global"

  id: Mapped[int] = mapped_column(Integer, primary_key=True)
  touched_at: Mapped[str | None] = mapped_column(String, nullable=True)


class GateSlot(Base):
  __tablename__ = "gate_slots"

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  admitted_at: Mapped[str] = mapped_column(String, nullable=False)


class GateQueueEntry(Base):
  __tablename__ = "gate_queue"
  __table_args__ = (Index("ix_gate_queue_owner_seq", "owner_id", "seq"),)

  seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  owner_id: Mapped[str] = mapped_column(String, nullable=False)
  job_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  queued_at: Mapped[str] = mapped_column(String, nullable=False)


class SafetyAuditEntry(Base):
  __tablename__ = "safety_audit"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  stage: Mapped[str] = mapped_column(String(32), nullable=False)
  subject_ref: Mapped[str] = mapped_column(Text, nullable=False)
  safe: Mapped[bool] = mapped_column(Boolean, nullable=False)
  reason: Mapped[str | None] = mapped_column(String, nullable=True)
  strict: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  checked_at: Mapped[str] = mapped_column(String, nullable=False)
