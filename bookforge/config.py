"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from bookforge.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the BookForge engine."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  generation_base_url: str
  generation_api_key: str | None
  http_connect_timeout_seconds: float
  batch_retry_delay_seconds: float
  batch_poll_interval_seconds: float
  batch_max_consecutive_errors: int
  audio_request_timeout_seconds: float
  archive_compression_level: int
  max_finished_runs: int
  preferences_path: str | None
  pro_features_enabled: bool
  log_dir: str
  log_max_bytes: int
  log_backup_count: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ()

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("BOOKFORGE_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_positive_float(name: str, default: str) -> float:
  raw = os.getenv(name, default)
  try:
    value = float(raw)
  except ValueError as exc:
    raise ValueError(f"{name} must be a number.") from exc

  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")

  return value


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("BOOKFORGE_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("BOOKFORGE_DEBUG"))

  generation_base_url = (os.getenv("BOOKFORGE_GENERATION_BASE_URL") or "http://localhost:3000").strip().rstrip("/")

  # Polling cadence for batch mode is fixed per deployment, not per run.
  batch_retry_delay_seconds = _parse_positive_float("BOOKFORGE_BATCH_RETRY_DELAY_SECONDS", "2.0")
  batch_poll_interval_seconds = _parse_positive_float("BOOKFORGE_BATCH_POLL_INTERVAL_SECONDS", "0.5")
  batch_max_consecutive_errors = int(os.getenv("BOOKFORGE_BATCH_MAX_CONSECUTIVE_ERRORS", "3"))
  if batch_max_consecutive_errors <= 0:
    raise ValueError("BOOKFORGE_BATCH_MAX_CONSECUTIVE_ERRORS must be a positive integer.")

  # Narration synthesis is slow; the default allows 12 minutes per request.
  audio_request_timeout_seconds = _parse_positive_float("BOOKFORGE_AUDIO_REQUEST_TIMEOUT_SECONDS", "720")
  http_connect_timeout_seconds = _parse_positive_float("BOOKFORGE_HTTP_CONNECT_TIMEOUT_SECONDS", "10")

  archive_compression_level = int(os.getenv("BOOKFORGE_ARCHIVE_COMPRESSION_LEVEL", "6"))
  if not 0 <= archive_compression_level <= 9:
    raise ValueError("BOOKFORGE_ARCHIVE_COMPRESSION_LEVEL must be between 0 and 9.")

  # Finished runs are kept in memory for status polling, oldest evicted first.
  max_finished_runs = int(os.getenv("BOOKFORGE_MAX_FINISHED_RUNS", "200"))
  if max_finished_runs <= 0:
    raise ValueError("BOOKFORGE_MAX_FINISHED_RUNS must be a positive integer.")

  log_max_bytes = int(os.getenv("BOOKFORGE_LOG_MAX_BYTES", "5242880"))  # 5MB default
  if log_max_bytes <= 0:
    raise ValueError("BOOKFORGE_LOG_MAX_BYTES must be a positive integer.")

  log_backup_count = int(os.getenv("BOOKFORGE_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("BOOKFORGE_LOG_BACKUP_COUNT must be zero or a positive integer.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("BOOKFORGE_ALLOWED_ORIGINS")),
    generation_base_url=generation_base_url,
    generation_api_key=_optional_str(os.getenv("BOOKFORGE_GENERATION_API_KEY")),
    http_connect_timeout_seconds=http_connect_timeout_seconds,
    batch_retry_delay_seconds=batch_retry_delay_seconds,
    batch_poll_interval_seconds=batch_poll_interval_seconds,
    batch_max_consecutive_errors=batch_max_consecutive_errors,
    audio_request_timeout_seconds=audio_request_timeout_seconds,
    archive_compression_level=archive_compression_level,
    max_finished_runs=max_finished_runs,
    preferences_path=_optional_str(os.getenv("BOOKFORGE_PREFERENCES_PATH")),
    pro_features_enabled=_parse_bool(os.getenv("BOOKFORGE_PRO_FEATURES_ENABLED"), default=True),
    log_dir=(os.getenv("BOOKFORGE_LOG_DIR") or "./logs").strip(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
  )
