import logging
import time
import uuid

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("adcraft.core.middleware")


class RequestIdMiddleware:
  """Tag each request with an id, echo it as ``x-request-id`` and log timing."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    request_id = str(uuid.uuid4())
    scope.setdefault("state", {})["request_id"] = request_id
    method = scope.get("method", "")
    path = scope.get("path", "")
    started = time.perf_counter()
    status_holder: dict[str, int] = {}

    async def send_wrapper(message: Message) -> None:
      if message["type"] == "http.response.start":
        status_holder["status"] = message["status"]
        headers = MutableHeaders(scope=message)
        headers["x-request-id"] = request_id
      await send(message)

    try:
      await self.app(scope, receive, send_wrapper)
    finally:
      elapsed_ms = (time.perf_counter() - started) * 1000
      logger.info("Request request_id=%s %s %s status=%s (took %.2fms)", request_id, method, path, status_holder.get("status"), elapsed_ms)
