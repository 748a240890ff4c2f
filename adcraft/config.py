"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from adcraft.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_JOB_STORE_BACKENDS = {"memory", "postgres"}
_TASK_PROVIDERS = {"inprocess", "http"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the adcraft job orchestration service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  job_store_backend: str
  owner_concurrency_limit: int
  global_inflight_limit: int
  retry_max_attempts: int
  retry_base_delay_seconds: float
  retry_max_delay_seconds: float
  retry_jitter_ratio: float
  analysis_timeout_seconds: float
  background_timeout_seconds: float
  caption_timeout_seconds: float
  moderation_timeout_seconds: float
  confidence_floor: float
  caption_min_chars: int
  caption_max_chars: int
  variation_count: int
  safety_blocked_terms: tuple[str, ...]
  task_service_provider: str
  base_url: str | None
  task_secret: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _parse_csv(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ()
  return tuple(item.strip() for item in raw.split(",") if item.strip())


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  origins = _parse_csv(raw)
  if "*" in origins:
    raise ValueError("ADCRAFT_ALLOWED_ORIGINS must not include wildcard origins.")
  return origins


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("ADCRAFT_ENV", "development").lower()
  debug = _parse_bool(os.getenv("ADCRAFT_DEBUG"))

  log_max_bytes = _positive_int("ADCRAFT_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("ADCRAFT_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("ADCRAFT_LOG_BACKUP_COUNT must be zero or a positive integer.")

  job_store_backend = (os.getenv("ADCRAFT_JOB_STORE_BACKEND") or "memory").strip().lower()
  if job_store_backend not in _JOB_STORE_BACKENDS:
    raise ValueError(f"ADCRAFT_JOB_STORE_BACKEND must be one of {sorted(_JOB_STORE_BACKENDS)}.")

  pg_dsn = _optional_str(os.getenv("ADCRAFT_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))
  if job_store_backend == "postgres" and not pg_dsn:
    raise ValueError("ADCRAFT_PG_DSN must be set when ADCRAFT_JOB_STORE_BACKEND=postgres.")

  owner_concurrency_limit = _positive_int("ADCRAFT_OWNER_CONCURRENCY_LIMIT", "5")
  global_inflight_limit = _positive_int("ADCRAFT_GLOBAL_INFLIGHT_LIMIT", "100")

  retry_max_attempts = _positive_int("ADCRAFT_RETRY_MAX_ATTEMPTS", "3")
  retry_base_delay_seconds = _positive_float("ADCRAFT_RETRY_BASE_DELAY_SECONDS", "1.0")
  retry_max_delay_seconds = _positive_float("ADCRAFT_RETRY_MAX_DELAY_SECONDS", "30.0")
  retry_jitter_ratio = float(os.getenv("ADCRAFT_RETRY_JITTER_RATIO", "0.25"))
  # Jitter above the delay itself would let a later delay undercut an earlier one.
  if not 0 <= retry_jitter_ratio <= 1:
    raise ValueError("ADCRAFT_RETRY_JITTER_RATIO must be between 0 and 1.")

  confidence_floor = float(os.getenv("ADCRAFT_CONFIDENCE_FLOOR", "0.6"))
  if not 0 <= confidence_floor <= 1:
    raise ValueError("ADCRAFT_CONFIDENCE_FLOOR must be between 0 and 1.")

  caption_min_chars = _positive_int("ADCRAFT_CAPTION_MIN_CHARS", "50")
  caption_max_chars = _positive_int("ADCRAFT_CAPTION_MAX_CHARS", "150")
  if caption_min_chars > caption_max_chars:
    raise ValueError("ADCRAFT_CAPTION_MIN_CHARS must not exceed ADCRAFT_CAPTION_MAX_CHARS.")

  task_service_provider = (os.getenv("ADCRAFT_TASK_SERVICE_PROVIDER") or "inprocess").strip().lower()
  if task_service_provider not in _TASK_PROVIDERS:
    raise ValueError(f"ADCRAFT_TASK_SERVICE_PROVIDER must be one of {sorted(_TASK_PROVIDERS)}.")

  base_url = _optional_str(os.getenv("ADCRAFT_BASE_URL"))
  task_secret = _optional_str(os.getenv("ADCRAFT_TASK_SECRET"))
  if task_service_provider == "http" and not (base_url and task_secret):
    raise ValueError("ADCRAFT_BASE_URL and ADCRAFT_TASK_SECRET must be set for the http task provider.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("ADCRAFT_ALLOWED_ORIGINS")),
    log_dir=(os.getenv("ADCRAFT_LOG_DIR") or "./logs").strip(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("ADCRAFT_LOG_HTTP_4XX")),
    pg_dsn=pg_dsn,
    pg_connect_timeout=_positive_int("ADCRAFT_PG_CONNECT_TIMEOUT", "5"),
    job_store_backend=job_store_backend,
    owner_concurrency_limit=owner_concurrency_limit,
    global_inflight_limit=global_inflight_limit,
    retry_max_attempts=retry_max_attempts,
    retry_base_delay_seconds=retry_base_delay_seconds,
    retry_max_delay_seconds=retry_max_delay_seconds,
    retry_jitter_ratio=retry_jitter_ratio,
    analysis_timeout_seconds=_positive_float("ADCRAFT_ANALYSIS_TIMEOUT_SECONDS", "30"),
    background_timeout_seconds=_positive_float("ADCRAFT_BACKGROUND_TIMEOUT_SECONDS", "120"),
    caption_timeout_seconds=_positive_float("ADCRAFT_CAPTION_TIMEOUT_SECONDS", "30"),
    moderation_timeout_seconds=_positive_float("ADCRAFT_MODERATION_TIMEOUT_SECONDS", "15"),
    confidence_floor=confidence_floor,
    caption_min_chars=caption_min_chars,
    caption_max_chars=caption_max_chars,
    variation_count=_positive_int("ADCRAFT_VARIATION_COUNT", "3"),
    safety_blocked_terms=tuple(term.lower() for term in _parse_csv(os.getenv("ADCRAFT_SAFETY_BLOCKED_TERMS"))),
    task_service_provider=task_service_provider,
    base_url=base_url,
    task_secret=task_secret,
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring the rest of the runtime configuration."""
  debug = _parse_bool(os.getenv("ADCRAFT_DEBUG"))
  pg_connect_timeout = int(os.getenv("ADCRAFT_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("ADCRAFT_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = _optional_str(os.getenv("ADCRAFT_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
