"""Shared gate backend so every worker process sees the same slot counts."""

from __future__ import annotations

import logging

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adcraft.jobs.gate import GateBackend, GateDecision, GateEntry, GateSnapshot, GateStatus
from adcraft.schema.jobs import GateGlobal, GateQueueEntry, GateSlot
from adcraft.utils.time import now_iso

logger = logging.getLogger(__name__)

_GLOBAL_ROW_ID = 1


class PostgresGateBackend(GateBackend):
  """
  Gate state in SQL tables.

  Every operation runs in one transaction that first locks the single
  ``gate_global`` row, so admissions, releases and withdrawals are serialized
  across processes and the global in-flight count cannot be overshot.
  """

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    if session_factory is None:
      raise RuntimeError("Database not initialized")
    self._session_factory = session_factory

  async def initialize(self) -> None:
    """Insert the lock row when missing."""
    async with self._session_factory() as session:
      if await session.get(GateGlobal, _GLOBAL_ROW_ID) is not None:
        return
      session.add(GateGlobal(id=_GLOBAL_ROW_ID, touched_at=now_iso()))
      try:
        await session.commit()
      except IntegrityError:
        # Another process inserted it first.
        await session.rollback()

  async def _lock(self, session: AsyncSession) -> None:
    row = (await session.execute(select(GateGlobal).where(GateGlobal.id == _GLOBAL_ROW_ID).with_for_update())).scalar_one_or_none()
    if row is None:
      session.add(GateGlobal(id=_GLOBAL_ROW_ID, touched_at=now_iso()))
      await session.flush()
      return
    row.touched_at = now_iso()

  async def _count(self, session: AsyncSession, model: type[GateSlot] | type[GateQueueEntry], owner_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(model)
    if owner_id is not None:
      stmt = stmt.where(model.owner_id == owner_id)
    return int((await session.execute(stmt)).scalar_one())

  async def _in_flight(self, session: AsyncSession) -> int:
    return await self._count(session, GateSlot) + await self._count(session, GateQueueEntry)

  async def _queue_position(self, session: AsyncSession, entry: GateQueueEntry) -> int:
    stmt = select(func.count()).select_from(GateQueueEntry).where(GateQueueEntry.owner_id == entry.owner_id, GateQueueEntry.seq <= entry.seq)
    return int((await session.execute(stmt)).scalar_one())

  async def acquire(self, owner_id: str, job_id: str, *, owner_limit: int, global_limit: int) -> GateDecision:
    async with self._session_factory() as session, session.begin():
      await self._lock(session)
      if await session.get(GateSlot, job_id) is not None:
        return GateDecision(status=GateStatus.ADMITTED, in_flight=await self._in_flight(session))
      queued = (await session.execute(select(GateQueueEntry).where(GateQueueEntry.job_id == job_id))).scalar_one_or_none()
      if queued is not None:
        return GateDecision(status=GateStatus.QUEUED, in_flight=await self._in_flight(session), position=await self._queue_position(session, queued))

      in_flight = await self._in_flight(session)
      if in_flight >= global_limit:
        return GateDecision(status=GateStatus.THROTTLED, in_flight=in_flight)

      owner_active = await self._count(session, GateSlot, owner_id)
      owner_queued = await self._count(session, GateQueueEntry, owner_id)
      if owner_active < owner_limit and owner_queued == 0:
        session.add(GateSlot(job_id=job_id, owner_id=owner_id, admitted_at=now_iso()))
        return GateDecision(status=GateStatus.ADMITTED, in_flight=in_flight + 1)

      session.add(GateQueueEntry(owner_id=owner_id, job_id=job_id, queued_at=now_iso()))
      return GateDecision(status=GateStatus.QUEUED, in_flight=in_flight + 1, position=owner_queued + 1)

  async def release(self, owner_id: str, job_id: str, *, owner_limit: int) -> str | None:
    async with self._session_factory() as session, session.begin():
      await self._lock(session)
      await session.execute(delete(GateSlot).where(GateSlot.job_id == job_id))
      if await self._count(session, GateSlot, owner_id) >= owner_limit:
        return None
      head = (await session.execute(select(GateQueueEntry).where(GateQueueEntry.owner_id == owner_id).order_by(GateQueueEntry.seq.asc()).limit(1))).scalar_one_or_none()
      if head is None:
        return None
      promoted = head.job_id
      await session.delete(head)
      session.add(GateSlot(job_id=promoted, owner_id=owner_id, admitted_at=now_iso()))
      logger.debug("Gate promoted job_id=%s for owner_id=%s", promoted, owner_id)
      return promoted

  async def withdraw(self, owner_id: str, job_id: str) -> bool:
    async with self._session_factory() as session, session.begin():
      await self._lock(session)
      result = await session.execute(delete(GateQueueEntry).where(GateQueueEntry.owner_id == owner_id, GateQueueEntry.job_id == job_id))
      return result.rowcount > 0

  async def snapshot(self, owner_id: str) -> GateSnapshot:
    async with self._session_factory() as session:
      active = await self._count(session, GateSlot, owner_id)
      queued = await self._count(session, GateQueueEntry, owner_id)
      return GateSnapshot(active=active, queued=queued, in_flight=await self._in_flight(session))

  async def entries(self) -> list[GateEntry]:
    async with self._session_factory() as session:
      slots = (await session.execute(select(GateSlot).order_by(GateSlot.admitted_at.asc()))).scalars().all()
      queue = (await session.execute(select(GateQueueEntry).order_by(GateQueueEntry.seq.asc()))).scalars().all()
      return [GateEntry(owner_id=slot.owner_id, job_id=slot.job_id, queued=False) for slot in slots] + [GateEntry(owner_id=entry.owner_id, job_id=entry.job_id, queued=True) for entry in queue]
