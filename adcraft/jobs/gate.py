"""Per-owner admission control with FIFO queuing and a global in-flight ceiling."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from adcraft.config import Settings
from adcraft.jobs.errors import ThrottledError
from adcraft.utils.time import now_iso

logger = logging.getLogger(__name__)


class GateStatus(str, Enum):
  ADMITTED = "admitted"
  QUEUED = "queued"
  THROTTLED = "throttled"


@dataclass(frozen=True)
class GateDecision:
  """Backend answer to one admission request."""

  status: GateStatus
  in_flight: int
  position: int | None = None


@dataclass(frozen=True)
class GateSnapshot:
  active: int
  queued: int
  in_flight: int


@dataclass(frozen=True)
class GateEntry:
  """One job the gate is counting, either holding a slot or queued."""

  owner_id: str
  job_id: str
  queued: bool


@dataclass(frozen=True)
class AdmissionTicket:
  """A granted concurrency slot for one job."""

  owner_id: str
  job_id: str
  admitted_at: str


@dataclass
class QueuedHandle:
  """A request waiting in its owner's FIFO queue.

  ``wait()`` resolves with the ticket once a released slot reaches this request
  in the current process. Other processes learn of the admission through the
  ticket returned by ``ConcurrencyGate.release``. Nothing is registered with
  the gate until ``wait()`` is called.
  """

  owner_id: str
  job_id: str
  position: int
  _gate: ConcurrencyGate = field(repr=False)
  _future: asyncio.Future[AdmissionTicket] | None = field(default=None, repr=False)

  async def wait(self) -> AdmissionTicket:
    self._future = self._gate._waiter(self.job_id)
    try:
      return await asyncio.shield(self._future)
    except asyncio.CancelledError:
      self._gate._discard_waiter(self.job_id)
      raise

  @property
  def admitted(self) -> bool:
    return self._future is not None and self._future.done() and not self._future.cancelled()


class GateBackend(Protocol):
  """Authoritative storage for slot counts and owner queues.

  Implementations must serialize every mutation so FIFO order per owner and
  the global count stay consistent across concurrent callers.
  """

  async def acquire(self, owner_id: str, job_id: str, *, owner_limit: int, global_limit: int) -> GateDecision:
    """Admit, queue, or throttle a request. Repeating a known job_id returns its current status."""

  async def release(self, owner_id: str, job_id: str, *, owner_limit: int) -> str | None:
    """Free the job's slot and return the job id promoted from the owner's queue, if any."""

  async def withdraw(self, owner_id: str, job_id: str) -> bool:
    """Drop a queued request. Return False when it was not queued."""

  async def snapshot(self, owner_id: str) -> GateSnapshot:
    """Return counters for one owner plus the global in-flight total."""

  async def entries(self) -> list[GateEntry]:
    """List every admitted and queued job, queued ones in FIFO order."""


class InMemoryGateBackend(GateBackend):
  """Process-local backend; one lock serializes all owners."""

  def __init__(self) -> None:
    self._active: dict[str, set[str]] = {}
    self._queues: dict[str, deque[str]] = {}
    self._lock = asyncio.Lock()

  def _in_flight(self) -> int:
    return sum(len(jobs) for jobs in self._active.values()) + sum(len(queue) for queue in self._queues.values())

  async def acquire(self, owner_id: str, job_id: str, *, owner_limit: int, global_limit: int) -> GateDecision:
    async with self._lock:
      active = self._active.setdefault(owner_id, set())
      queue = self._queues.setdefault(owner_id, deque())
      if job_id in active:
        return GateDecision(status=GateStatus.ADMITTED, in_flight=self._in_flight())
      if job_id in queue:
        return GateDecision(status=GateStatus.QUEUED, in_flight=self._in_flight(), position=list(queue).index(job_id) + 1)

      in_flight = self._in_flight()
      if in_flight >= global_limit:
        return GateDecision(status=GateStatus.THROTTLED, in_flight=in_flight)
      # Never jump ahead of requests already waiting for this owner.
      if len(active) < owner_limit and not queue:
        active.add(job_id)
        return GateDecision(status=GateStatus.ADMITTED, in_flight=in_flight + 1)
      queue.append(job_id)
      return GateDecision(status=GateStatus.QUEUED, in_flight=in_flight + 1, position=len(queue))

  async def release(self, owner_id: str, job_id: str, *, owner_limit: int) -> str | None:
    async with self._lock:
      active = self._active.setdefault(owner_id, set())
      queue = self._queues.setdefault(owner_id, deque())
      active.discard(job_id)
      if queue and len(active) < owner_limit:
        promoted = queue.popleft()
        active.add(promoted)
        return promoted
      return None

  async def withdraw(self, owner_id: str, job_id: str) -> bool:
    async with self._lock:
      queue = self._queues.get(owner_id)
      if not queue or job_id not in queue:
        return False
      queue.remove(job_id)
      return True

  async def snapshot(self, owner_id: str) -> GateSnapshot:
    async with self._lock:
      return GateSnapshot(active=len(self._active.get(owner_id, ())), queued=len(self._queues.get(owner_id, ())), in_flight=self._in_flight())

  async def entries(self) -> list[GateEntry]:
    async with self._lock:
      admitted = [GateEntry(owner_id=owner_id, job_id=job_id, queued=False) for owner_id, jobs in self._active.items() for job_id in sorted(jobs)]
      queued = [GateEntry(owner_id=owner_id, job_id=job_id, queued=True) for owner_id, queue in self._queues.items() for job_id in queue]
      return admitted + queued


class ConcurrencyGate:
  """Caps concurrent jobs per owner and admits excess requests in arrival order."""

  def __init__(self, backend: GateBackend, *, owner_limit: int = 5, global_limit: int = 100) -> None:
    if owner_limit <= 0 or global_limit <= 0:
      raise ValueError("gate limits must be positive")
    self._backend = backend
    self._owner_limit = owner_limit
    self._global_limit = global_limit
    self._waiters: dict[str, asyncio.Future[AdmissionTicket]] = {}

  @classmethod
  def from_settings(cls, settings: Settings, backend: GateBackend | None = None) -> ConcurrencyGate:
    return cls(backend or InMemoryGateBackend(), owner_limit=settings.owner_concurrency_limit, global_limit=settings.global_inflight_limit)

  @property
  def backend(self) -> GateBackend:
    return self._backend

  @property
  def owner_limit(self) -> int:
    return self._owner_limit

  @property
  def global_limit(self) -> int:
    return self._global_limit

  async def admit(self, owner_id: str, job_id: str) -> AdmissionTicket | QueuedHandle:
    """Grant a slot now, or queue the request behind the owner's earlier ones."""
    decision = await self._backend.acquire(owner_id, job_id, owner_limit=self._owner_limit, global_limit=self._global_limit)
    if decision.status is GateStatus.THROTTLED:
      logger.warning("Admission throttled owner_id=%s job_id=%s in_flight=%d limit=%d", owner_id, job_id, decision.in_flight, self._global_limit)
      raise ThrottledError(in_flight=decision.in_flight, limit=self._global_limit)
    if decision.status is GateStatus.ADMITTED:
      logger.debug("Admitted owner_id=%s job_id=%s in_flight=%d", owner_id, job_id, decision.in_flight)
      return AdmissionTicket(owner_id=owner_id, job_id=job_id, admitted_at=now_iso())

    logger.info("Queued owner_id=%s job_id=%s position=%s", owner_id, job_id, decision.position)
    return QueuedHandle(owner_id=owner_id, job_id=job_id, position=decision.position or 0, _gate=self)

  @property
  def waiting(self) -> int:
    """Number of queued requests with a caller blocked in ``wait()``."""
    return len(self._waiters)

  def _waiter(self, job_id: str) -> asyncio.Future[AdmissionTicket]:
    future = self._waiters.get(job_id)
    if future is None or future.done():
      future = asyncio.get_running_loop().create_future()
      self._waiters[job_id] = future
    return future

  def _discard_waiter(self, job_id: str) -> None:
    future = self._waiters.pop(job_id, None)
    if future is not None and not future.done():
      future.cancel()

  async def release(self, owner_id: str, job_id: str) -> AdmissionTicket | None:
    """Free a job's slot; return the ticket of the queued request it admits, if any."""
    promoted = await self._backend.release(owner_id, job_id, owner_limit=self._owner_limit)
    if promoted is None:
      return None
    ticket = AdmissionTicket(owner_id=owner_id, job_id=promoted, admitted_at=now_iso())
    waiter = self._waiters.pop(promoted, None)
    if waiter is not None and not waiter.done():
      waiter.set_result(ticket)
    logger.info("Promoted queued job owner_id=%s job_id=%s after release of %s", owner_id, promoted, job_id)
    return ticket

  async def withdraw(self, owner_id: str, job_id: str) -> bool:
    """Remove a queued request that will never run."""
    removed = await self._backend.withdraw(owner_id, job_id)
    self._discard_waiter(job_id)
    return removed

  async def holders(self) -> list[GateEntry]:
    """Every job the backend currently counts, admitted or queued."""
    return await self._backend.entries()

  async def snapshot(self, owner_id: str) -> GateSnapshot:
    return await self._backend.snapshot(owner_id)
