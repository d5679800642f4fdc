"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Barberbell notification service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  firebase_project_id: str | None
  firebase_service_account_json_path: str | None
  push_notifications_enabled: bool
  push_vapid_public_key: str | None
  push_vapid_private_key: str | None
  push_vapid_sub: str | None
  push_timeout_seconds: float
  gateway_notifications_enabled: bool
  public_base_url: str | None
  admin_queue_path: str
  reconciliation_enabled: bool
  dispatch_audit_enabled: bool
  event_secret: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("BARBERBELL_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("BARBERBELL_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("BARBERBELL_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None or raw.strip() == "":
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")

  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("BARBERBELL_ENV", "development").lower()
  debug = _parse_bool(os.getenv("BARBERBELL_DEBUG"))

  log_max_bytes = _positive_int("BARBERBELL_LOG_MAX_BYTES", "5242880")
  log_backup_count = int(os.getenv("BARBERBELL_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("BARBERBELL_LOG_BACKUP_COUNT must be zero or a positive integer.")

  push_notifications_enabled = _parse_bool(os.getenv("BARBERBELL_PUSH_NOTIFICATIONS_ENABLED"))
  push_vapid_public_key = _optional_str(os.getenv("BARBERBELL_PUSH_VAPID_PUBLIC_KEY"))
  push_vapid_private_key = _optional_str(os.getenv("BARBERBELL_PUSH_VAPID_PRIVATE_KEY"))
  push_vapid_sub = _optional_str(os.getenv("BARBERBELL_PUSH_VAPID_SUB"))
  push_timeout_seconds = float(os.getenv("BARBERBELL_PUSH_TIMEOUT_SECONDS", "10"))
  if push_timeout_seconds <= 0:
    raise ValueError("BARBERBELL_PUSH_TIMEOUT_SECONDS must be positive.")

  # Validate VAPID material only when the direct push path is enabled.
  if push_notifications_enabled:
    if not push_vapid_public_key:
      raise ValueError("BARBERBELL_PUSH_VAPID_PUBLIC_KEY must be set when push notifications are enabled.")

    if not push_vapid_private_key:
      raise ValueError("BARBERBELL_PUSH_VAPID_PRIVATE_KEY must be set when push notifications are enabled.")

    if not push_vapid_sub:
      raise ValueError("BARBERBELL_PUSH_VAPID_SUB must be set when push notifications are enabled.")

    if not (push_vapid_sub.startswith("mailto:") or push_vapid_sub.startswith("https://")):
      raise ValueError("BARBERBELL_PUSH_VAPID_SUB must start with 'mailto:' or 'https://'.")

  gateway_notifications_enabled = _parse_bool(os.getenv("BARBERBELL_GATEWAY_NOTIFICATIONS_ENABLED"))
  firebase_project_id = _optional_str(os.getenv("FIREBASE_PROJECT_ID"))
  if gateway_notifications_enabled and not firebase_project_id:
    raise ValueError("FIREBASE_PROJECT_ID must be set when gateway notifications are enabled.")

  public_base_url = _optional_str(os.getenv("BARBERBELL_PUBLIC_BASE_URL"))
  if public_base_url is not None and not public_base_url.startswith("https://"):
    raise ValueError("BARBERBELL_PUBLIC_BASE_URL must start with 'https://'.")

  admin_queue_path = (os.getenv("BARBERBELL_ADMIN_QUEUE_PATH") or "/admin/appointments").strip()
  if not admin_queue_path.startswith("/"):
    raise ValueError("BARBERBELL_ADMIN_QUEUE_PATH must be a site-relative path.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("BARBERBELL_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("BARBERBELL_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("BARBERBELL_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("BARBERBELL_PG_CONNECT_TIMEOUT", "5"),
    firebase_project_id=firebase_project_id,
    firebase_service_account_json_path=_optional_str(os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH")),
    push_notifications_enabled=push_notifications_enabled,
    push_vapid_public_key=push_vapid_public_key,
    push_vapid_private_key=push_vapid_private_key,
    push_vapid_sub=push_vapid_sub,
    push_timeout_seconds=push_timeout_seconds,
    gateway_notifications_enabled=gateway_notifications_enabled,
    public_base_url=public_base_url.rstrip("/") if public_base_url else None,
    admin_queue_path=admin_queue_path,
    reconciliation_enabled=_parse_bool(os.getenv("BARBERBELL_RECONCILIATION_ENABLED"), default=True),
    dispatch_audit_enabled=_parse_bool(os.getenv("BARBERBELL_DISPATCH_AUDIT_ENABLED"), default=True),
    event_secret=_optional_str(os.getenv("BARBERBELL_EVENT_SECRET")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so migrations don't require unrelated env vars.
  return DatabaseSettings(debug=_parse_bool(os.getenv("BARBERBELL_DEBUG")), pg_dsn=os.getenv("BARBERBELL_PG_DSN") or os.getenv("DATABASE_URL"), pg_connect_timeout=_positive_int("BARBERBELL_PG_CONNECT_TIMEOUT", "5"))


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
