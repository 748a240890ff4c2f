"""Sinks for safety check audit records."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adcraft.jobs.safety import SafetyAuditRecord, SafetyAuditSink
from adcraft.schema.jobs import SafetyAuditEntry

logger = logging.getLogger("adcraft.safety_audit")


class LoggingSafetyAuditSink(SafetyAuditSink):
  """Emit each record as a structured log line for an external log consumer."""

  async def append(self, record: SafetyAuditRecord) -> None:
    logger.info(
      "safety_check job_id=%s stage=%s ref=%s safe=%s reason=%s strict=%s checked_at=%s",
      record.job_id,
      record.stage.value,
      record.subject_ref,
      record.safe,
      record.reason,
      record.strict,
      record.checked_at,
    )


class PostgresSafetyAuditSink(SafetyAuditSink):
  """Persist audit records into the safety_audit table."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    if session_factory is None:
      raise RuntimeError("Database not initialized")
    self._session_factory = session_factory

  async def append(self, record: SafetyAuditRecord) -> None:
    async with self._session_factory() as session:
      session.add(
        SafetyAuditEntry(
          id=record.audit_id,
          job_id=record.job_id,
          stage=record.stage.value,
          subject_ref=record.subject_ref,
          safe=record.safe,
          reason=record.reason,
          strict=record.strict,
          checked_at=record.checked_at,
        )
      )
      await session.commit()


class RecordingSafetyAuditSink(SafetyAuditSink):
  """Keep records in memory for later inspection."""

  def __init__(self) -> None:
    self.records: list[SafetyAuditRecord] = []

  async def append(self, record: SafetyAuditRecord) -> None:
    self.records.append(record)

  def for_job(self, job_id: str) -> list[SafetyAuditRecord]:
    return [record for record in self.records if record.job_id == job_id]
