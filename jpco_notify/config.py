"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
  """Typed settings for the JPCO notification service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_level: str
  log_dir: str | None
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  firebase_project_id: str | None
  firebase_service_account_json_path: str | None
  push_notifications_enabled: bool
  push_icon: str
  push_badge: str
  push_default_url: str
  push_ttl_seconds: int
  token_collection: str
  history_collection: str
  provider_timeout_seconds: float
  store_timeout_seconds: float
  batch_timeout_seconds: float | None


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("JPCO_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("JPCO_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("JPCO_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_positive_float(name: str, raw: str | None, default: str) -> float:
  value = float(raw if raw not in (None, "") else default)
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")

  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("JPCO_ENV", "development").lower()
  debug = _parse_bool(os.getenv("JPCO_DEBUG"))

  log_level = (os.getenv("JPCO_LOG_LEVEL") or "INFO").strip().upper()
  if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
    raise ValueError("JPCO_LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL.")

  log_max_bytes = int(os.getenv("JPCO_LOG_MAX_BYTES", "5242880"))  # 5MB default
  if log_max_bytes <= 0:
    raise ValueError("JPCO_LOG_MAX_BYTES must be a positive integer.")

  log_backup_count = int(os.getenv("JPCO_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("JPCO_LOG_BACKUP_COUNT must be zero or a positive integer.")

  push_ttl_seconds = int(os.getenv("JPCO_PUSH_TTL_SECONDS", "86400"))
  if push_ttl_seconds <= 0:
    raise ValueError("JPCO_PUSH_TTL_SECONDS must be a positive integer.")

  push_icon = _optional_str(os.getenv("JPCO_PUSH_ICON")) or "/images/logo/logo-icon.svg"

  # Timeouts bound each awaited call so one stuck recipient cannot stall the batch.
  provider_timeout_seconds = _parse_positive_float("JPCO_PROVIDER_TIMEOUT_SECONDS", os.getenv("JPCO_PROVIDER_TIMEOUT_SECONDS"), "10")
  store_timeout_seconds = _parse_positive_float("JPCO_STORE_TIMEOUT_SECONDS", os.getenv("JPCO_STORE_TIMEOUT_SECONDS"), "5")
  batch_timeout_seconds = _parse_optional_float(os.getenv("JPCO_BATCH_TIMEOUT_SECONDS"))

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("JPCO_ALLOWED_ORIGINS")),
    debug=debug,
    log_level=log_level,
    log_dir=_optional_str(os.getenv("JPCO_LOG_DIR")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("JPCO_LOG_HTTP_4XX")),
    firebase_project_id=_optional_str(os.getenv("FIREBASE_PROJECT_ID")),
    firebase_service_account_json_path=_optional_str(os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH")),
    push_notifications_enabled=_parse_bool(os.getenv("JPCO_PUSH_NOTIFICATIONS_ENABLED"), default=True),
    push_icon=push_icon,
    push_badge=_optional_str(os.getenv("JPCO_PUSH_BADGE")) or push_icon,
    push_default_url=_optional_str(os.getenv("JPCO_PUSH_DEFAULT_URL")) or "/notifications",
    push_ttl_seconds=push_ttl_seconds,
    token_collection=_optional_str(os.getenv("JPCO_TOKEN_COLLECTION")) or "fcmTokens",
    history_collection=_optional_str(os.getenv("JPCO_HISTORY_COLLECTION")) or "notifications",
    provider_timeout_seconds=provider_timeout_seconds,
    store_timeout_seconds=store_timeout_seconds,
    batch_timeout_seconds=batch_timeout_seconds,
  )


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _parse_optional_float(raw: str | None) -> float | None:
  if raw is None or raw.strip() == "":
    return None

  value = float(raw)

  if value <= 0:
    raise ValueError("JPCO_BATCH_TIMEOUT_SECONDS must be positive when provided.")

  return value
