"""Failure classification for external capability calls."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import httpx

from adcraft.jobs.models import FailureKind


class CapabilityError(Exception):
  """Raised by capability adapters with an explicit retry classification."""

  kind: FailureKind = FailureKind.PERMANENT


class TransientCapabilityError(CapabilityError):
  """Service unavailable, rate limited or timed out; worth retrying."""

  kind = FailureKind.TRANSIENT


class PermanentCapabilityError(CapabilityError):
  """Malformed input or a refusal; retrying will not help."""

  kind = FailureKind.PERMANENT


_TRANSIENT_HINTS: tuple[str, ...] = (
  "rate limit",
  "too many requests",
  "resource exhausted",
  "quota exceeded",
  "timeout",
  "timed out",
  "temporarily unavailable",
  "service unavailable",
  "bad gateway",
  "connection reset",
)


def _match_hint(message: str, hints: Iterable[str]) -> bool:
  """Return True when any hint appears in the message."""
  return any(hint in message for hint in hints)


def _classify_status(status_code: int) -> FailureKind:
  if status_code == 429 or status_code == 408 or status_code >= 500:
    return FailureKind.TRANSIENT
  return FailureKind.PERMANENT


def classify_failure(exc: BaseException) -> FailureKind:
  """
  Classify a capability failure as transient or permanent.

  Transient:
    - explicit TransientCapabilityError
    - timeouts (asyncio and httpx)
    - connection/transport errors
    - HTTP 408, 429 and 5xx responses

  Permanent:
    - explicit PermanentCapabilityError
    - other HTTP 4xx responses
    - programming and payload errors (ValueError, TypeError, KeyError)

  Unknown exceptions fall back to message hints and default to permanent.
  """
  if isinstance(exc, CapabilityError):
    return exc.kind
  if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
    return FailureKind.TRANSIENT
  if isinstance(exc, httpx.HTTPStatusError):
    return _classify_status(exc.response.status_code)
  if isinstance(exc, (httpx.TransportError, ConnectionError)):
    return FailureKind.TRANSIENT
  if isinstance(exc, (ValueError, TypeError, KeyError)):
    return FailureKind.PERMANENT
  if _match_hint(str(exc).lower(), _TRANSIENT_HINTS):
    return FailureKind.TRANSIENT
  return FailureKind.PERMANENT
