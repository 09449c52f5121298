"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from docgen.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_DEFAULT_TEMPLATE_CACHE_BYTES = 500 * 1024 * 1024


@dataclass(frozen=True)
class Settings:
  """Typed settings for the document generation service."""

  environment: str
  debug: bool
  log_dir: str | None
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  api_token: str | None
  sf_domain: str | None
  sf_username: str | None
  sf_client_id: str | None
  sf_private_key: str | None
  sfdx_auth_url: str | None
  sf_api_version: str
  sf_request_timeout_seconds: float
  poller_enabled: bool
  poll_active_interval_ms: int
  poll_idle_interval_ms: int
  poll_batch_size: int
  poll_max_concurrency: int
  lock_ttl_ms: int
  max_attempts: int
  conversion_timeout_ms: int
  conversion_max_concurrent: int
  conversion_workdir: str
  soffice_binary: tuple[str, ...]
  template_cache_max_bytes: int
  idempotency_window_hours: int
  parent_lookup_fields: dict[str, str] = field(hash=False)


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


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_lookup_fields(raw: str | None) -> dict[str, str]:
  """Parse the relation-key to lookup-field table from a JSON object."""
  if not raw:
    return {}
  try:
    parsed = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ValueError("DOCGEN_PARENT_LOOKUP_FIELDS must be a JSON object.") from exc

  if not isinstance(parsed, dict) or not all(isinstance(key, str) and isinstance(value, str) for key, value in parsed.items()):
    raise ValueError("DOCGEN_PARENT_LOOKUP_FIELDS must map relation keys to field names.")

  return parsed


def _load_private_key() -> str | None:
  """Resolve the JWT signing key from an inline value or a file path."""
  inline = _optional_str(os.getenv("SF_PRIVATE_KEY"))
  if inline:
    # Single-line env values carry escaped newlines.
    return inline.replace("\\n", "\n")

  key_path = _optional_str(os.getenv("SF_PRIVATE_KEY_PATH"))
  if not key_path:
    return None

  path = Path(key_path)
  if not path.is_file():
    raise ValueError(f"SF_PRIVATE_KEY_PATH does not point to a file: {key_path}")
  return path.read_text(encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("DOCGEN_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("DOCGEN_DEBUG"))

  log_max_bytes = _positive_int("DOCGEN_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("DOCGEN_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("DOCGEN_LOG_BACKUP_COUNT must be zero or a positive integer.")

  sf_request_timeout_seconds = float(os.getenv("DOCGEN_SF_REQUEST_TIMEOUT_SECONDS", "30"))
  if sf_request_timeout_seconds <= 0:
    raise ValueError("DOCGEN_SF_REQUEST_TIMEOUT_SECONDS must be positive.")

  # Scheduler tuning.
  poll_batch_size = _positive_int("DOCGEN_POLL_BATCH_SIZE", "20")
  if poll_batch_size > 50:
    raise ValueError("DOCGEN_POLL_BATCH_SIZE must not exceed 50.")

  max_attempts = _positive_int("DOCGEN_MAX_ATTEMPTS", "3")

  # Conversion pool tuning.
  soffice_raw = (os.getenv("DOCGEN_SOFFICE_BINARY") or "soffice").strip()
  soffice_binary = tuple(part for part in soffice_raw.split() if part)
  if not soffice_binary:
    raise ValueError("DOCGEN_SOFFICE_BINARY must name an executable.")

  idempotency_window_hours = _positive_int("DOCGEN_IDEMPOTENCY_WINDOW_HOURS", "24")

  return Settings(
    environment=environment,
    debug=debug,
    log_dir=_optional_str(os.getenv("DOCGEN_LOG_DIR")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("DOCGEN_LOG_HTTP_4XX")),
    api_token=_optional_str(os.getenv("DOCGEN_API_TOKEN")),
    sf_domain=_optional_str(os.getenv("SF_DOMAIN")),
    sf_username=_optional_str(os.getenv("SF_USERNAME")),
    sf_client_id=_optional_str(os.getenv("SF_CLIENT_ID")),
    sf_private_key=_load_private_key(),
    sfdx_auth_url=_optional_str(os.getenv("SFDX_AUTH_URL")),
    sf_api_version=(os.getenv("DOCGEN_SF_API_VERSION") or "v59.0").strip(),
    sf_request_timeout_seconds=sf_request_timeout_seconds,
    poller_enabled=_parse_bool(os.getenv("DOCGEN_POLLER_ENABLED")),
    poll_active_interval_ms=_positive_int("DOCGEN_POLL_ACTIVE_INTERVAL_MS", "15000"),
    poll_idle_interval_ms=_positive_int("DOCGEN_POLL_IDLE_INTERVAL_MS", "60000"),
    poll_batch_size=poll_batch_size,
    poll_max_concurrency=_positive_int("DOCGEN_POLL_MAX_CONCURRENCY", "8"),
    lock_ttl_ms=_positive_int("DOCGEN_LOCK_TTL_MS", "120000"),
    max_attempts=max_attempts,
    conversion_timeout_ms=_positive_int("DOCGEN_CONVERSION_TIMEOUT_MS", "60000"),
    conversion_max_concurrent=_positive_int("DOCGEN_CONVERSION_MAX_CONCURRENT", "8"),
    conversion_workdir=(os.getenv("DOCGEN_CONVERSION_WORKDIR") or "/tmp").strip(),
    soffice_binary=soffice_binary,
    template_cache_max_bytes=_positive_int("DOCGEN_TEMPLATE_CACHE_MAX_BYTES", str(_DEFAULT_TEMPLATE_CACHE_BYTES)),
    idempotency_window_hours=idempotency_window_hours,
    parent_lookup_fields=_parse_lookup_fields(os.getenv("DOCGEN_PARENT_LOOKUP_FIELDS")),
  )
