import asyncio

import httpx
import pytest

from adcraft.ai.errors import PermanentCapabilityError, TransientCapabilityError, classify_failure
from adcraft.jobs.models import FailureKind


def _status_error(code: int) -> httpx.HTTPStatusError:
  request = httpx.Request("POST", "https://captions.example/v1/generate")
  return httpx.HTTPStatusError(f"status {code}", request=request, response=httpx.Response(code, request=request))


@pytest.mark.parametrize(
  ("exc", "expected"),
  [
    (TransientCapabilityError("busy"), FailureKind.TRANSIENT),
    (PermanentCapabilityError("refused"), FailureKind.PERMANENT),
    (asyncio.TimeoutError(), FailureKind.TRANSIENT),
    (httpx.ReadTimeout("slow"), FailureKind.TRANSIENT),
    (httpx.ConnectError("refused"), FailureKind.TRANSIENT),
    (ConnectionResetError(), FailureKind.TRANSIENT),
    (_status_error(429), FailureKind.TRANSIENT),
    (_status_error(503), FailureKind.TRANSIENT),
    (_status_error(422), FailureKind.PERMANENT),
    (ValueError("bad image"), FailureKind.PERMANENT),
    (RuntimeError("Resource exhausted for project"), FailureKind.TRANSIENT),
    (RuntimeError("unexpected"), FailureKind.PERMANENT),
  ],
)
def test_classify_failure(exc, expected):
  assert classify_failure(exc) is expected
