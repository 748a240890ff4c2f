import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from adcraft.config import Settings
from adcraft.jobs.errors import JobAccessDeniedError, JobNotFoundError, ThrottledError

logger = logging.getLogger("adcraft.core.exceptions")

_SCALARS = (str, int, float, bool)


def _jsonable(value: Any) -> Any:
  """Reduce arbitrary validation context to JSON primitives."""
  if value is None or isinstance(value, _SCALARS):
    return value
  if isinstance(value, dict):
    return {str(key): _jsonable(item) for key, item in value.items()}
  if isinstance(value, (list, tuple, set)):
    return [_jsonable(item) for item in value]
  if isinstance(value, BaseException):
    return type(value).__name__ if not str(value) else f"{type(value).__name__}: {value}"
  return str(value)


def _body(detail: Any, request: Request) -> dict[str, Any]:
  body: dict[str, Any] = {"detail": detail}
  request_id = _request_id(request)
  if request_id:
    body["requestId"] = request_id
  return body


def _request_id(request: Request) -> str | None:
  return getattr(request.state, "request_id", None)


def _strip_inputs(errors: Any) -> list[dict[str, Any]]:
  """Drop submitted values from validation errors so asset refs never echo back."""
  cleaned: list[dict[str, Any]] = []
  for error in errors:
    entry = {key: value for key, value in error.items() if key != "input"}
    context = entry.get("ctx")
    if isinstance(context, dict):
      entry["ctx"] = {key: value for key, value in context.items() if key != "input"}
    cleaned.append(_jsonable(entry))
  return cleaned


def _settings(request: Request) -> Settings:
  return request.app.state.settings


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Catch unhandled errors without leaking internals to the caller."""
  logger.error("Unhandled error request_id=%s path=%s error_type=%s", _request_id(request), request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_body("Internal Server Error", request))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  errors = _strip_inputs(exc.errors())
  logger.warning("Invalid request request_id=%s %s %s errors=%s", _request_id(request), request.method, request.url.path, errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_body(errors, request))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Pass 4xx details through; hide 5xx details."""
  if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
    logger.error("HTTP %s request_id=%s path=%s detail=%s", exc.status_code, _request_id(request), request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_body("Internal Server Error", request))

  if _settings(request).log_http_4xx:
    logger.warning("HTTP %s request_id=%s path=%s detail=%s", exc.status_code, _request_id(request), request.url.path, _jsonable(exc.detail))
  return JSONResponse(status_code=exc.status_code, content=_body(exc.detail, request), headers=getattr(exc, "headers", None))


async def throttled_exception_handler(request: Request, exc: ThrottledError) -> JSONResponse:
  """Admission rejected at the global ceiling; no job was created."""
  logger.info("Submission throttled request_id=%s in_flight=%d limit=%d", _request_id(request), exc.in_flight, exc.limit)
  return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=_body(str(exc), request), headers={"Retry-After": "5"})


async def job_not_found_exception_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
  return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_body("Job not found.", request))


async def job_access_denied_exception_handler(request: Request, exc: JobAccessDeniedError) -> JSONResponse:
  logger.warning("Job access denied request_id=%s job_id=%s", _request_id(request), exc.job_id)
  return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=_body("Access to this job is denied.", request))
