import logging
import logging.handlers
import sys
import time
import traceback
from pathlib import Path
from types import TracebackType

from adcraft.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Loggers owned by the server stack that must not duplicate records via the root logger.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")

_log_path: Path | None = None
_initialized = False


class CompactTracebackFormatter(logging.Formatter):
  """Console formatter that shows the first and last frames of a traceback."""

  def __init__(self, *args, keep_tail: int = 5, **kwargs) -> None:
    super().__init__(*args, **kwargs)
    self.keep_tail = keep_tail

  def formatException(self, ei: tuple[type[BaseException] | None, BaseException | None, TracebackType | None]) -> str:  # noqa: N802
    frames = traceback.format_exception(*ei)
    if len(frames) <= self.keep_tail + 1:
      return "".join(frames)
    return "".join([frames[0], "    ...\n", *frames[-self.keep_tail :]])


def _backup_namer(default_name: str) -> str:
  """Name rotated files ``adcraft-prod.log-1`` so they sort next to the live file."""
  stem, _, suffix = default_name.rpartition(".")
  return f"{stem}-{suffix}" if stem and suffix.isdigit() else default_name


def _console_handler() -> logging.Handler:
  handler = logging.StreamHandler(sys.stdout)
  handler.setFormatter(CompactTracebackFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
  return handler


def _file_handler(settings: Settings) -> tuple[logging.Handler, Path]:
  directory = Path(settings.log_dir).expanduser().resolve()
  try:
    directory.mkdir(parents=True, exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Cannot create log directory {directory}: {exc}") from exc

  path = directory / f"adcraft-{settings.environment}-{time.strftime('%Y%m%d-%H%M%S')}.log"
  handler = logging.handlers.RotatingFileHandler(path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  handler.namer = _backup_namer
  handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
  return handler, path


def setup_logging(settings: Settings) -> Path:
  """Send application and server logs to stdout and a rotating file; return the file path."""
  console = _console_handler()
  file_handler, path = _file_handler(settings)
  handlers = [console, file_handler]

  logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO, handlers=handlers, force=True)
  for name in _SERVER_LOGGERS:
    server_logger = logging.getLogger(name)
    server_logger.handlers = list(handlers)
    server_logger.propagate = False

  # Statement echo is governed by the engine's echo flag.
  logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
  return path


def initialize_logging(settings: Settings) -> Path | None:
  """Configure logging on first call; later calls return the existing file path."""
  global _log_path, _initialized
  if not _initialized:
    _log_path = setup_logging(settings)
    _initialized = True
    logging.getLogger(__name__).info("Logging to %s", _log_path)
  return _log_path
