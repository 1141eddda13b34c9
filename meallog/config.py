"""
Environment-driven settings for the meal log service.

Values are read once per application factory call. A ``.env`` file placed one
directory above the project root is loaded first so local development does not
need exported variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Tuple

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR.parent / ".env")

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash-lite"
DEFAULT_GUARDED_ROUTES = ("/", "/api/*", "/auth/*")


def _safe_float(value: Optional[str], default: float) -> float:
  try:
    return float(value) if value is not None else default
  except (TypeError, ValueError):
    return default


def _safe_int(value: Optional[str], default: int) -> int:
  try:
    return int(value) if value is not None else default
  except (TypeError, ValueError):
    return default


def _safe_bool(value: Optional[str], default: bool = False) -> bool:
  if value is None:
    return default
  return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_list(value: Optional[str]) -> Tuple[str, ...]:
  if not value:
    return ()
  return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
  """Resolved service configuration."""

  storage_backend: str = "sqlite"
  sqlite_db_path: Path = BASE_DIR / "meallog.db"
  uploads_dir: Path = BASE_DIR / "uploads"

  aws_region: Optional[str] = None
  aws_bucket_name: Optional[str] = None
  aws_s3_acl: str = "public-read"
  aws_meals_table: Optional[str] = None
  aws_whitelist_tables: Tuple[str, ...] = ()

  jwt_secret_key: str = "change-me"
  jwt_expiration_minutes: int = 60 * 24 * 30
  magic_link_expiration_minutes: int = 60

  gemini_api_key: str = ""
  gemini_model: str = DEFAULT_GEMINI_MODEL
  gemini_timeout: int = 60

  allow_list: Tuple[str, ...] = ()
  whitelist_collections: Tuple[str, ...] = ("allowed_users", "users_whitelist")
  access_cache_days: int = 30

  rate_limit_window_seconds: int = 10 * 60
  rate_limit_max_requests: int = 100
  rate_limit_sweep_threshold: int = 1000
  guarded_routes: Tuple[str, ...] = DEFAULT_GUARDED_ROUTES

  analysis_rate_limit_window_seconds: int = 60 * 60
  analysis_rate_limit_max_requests: int = 20
  max_analysis_payload_chars: int = 15 * 1024 * 1024

  monthly_upload_limit: int = 100

  mail_backend: str = "console"
  mail_sender: str = "no-reply@localhost"
  public_base_url: str = "http://localhost:5000"
  redirect_result_timeout_seconds: float = 10.0

  debug_console: bool = False
  log_buffer_capacity: int = 100
  cors_origins: Tuple[str, ...] = field(default_factory=lambda: ("*",))

  @property
  def use_aws_backend(self) -> bool:
    return self.storage_backend == "aws"

  @classmethod
  def from_env(cls, environ: Optional[Any] = None) -> "Settings":
    """Build settings from ``os.environ`` (or the supplied mapping)."""
    env = os.environ if environ is None else environ
    defaults = cls()

    whitelist_tables = _split_list(env.get("AWS_WHITELIST_TABLES"))
    collections = _split_list(env.get("WHITELIST_COLLECTIONS")) or defaults.whitelist_collections

    return cls(
      storage_backend=env.get("STORAGE_BACKEND", "sqlite").strip().lower(),
      sqlite_db_path=Path(env.get("SQLITE_DB_PATH", str(defaults.sqlite_db_path))).resolve(),
      uploads_dir=Path(env.get("UPLOADS_DIR", str(defaults.uploads_dir))).resolve(),
      aws_region=env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION"),
      aws_bucket_name=env.get("AWS_BUCKET_NAME"),
      aws_s3_acl=env.get("AWS_S3_ACL", defaults.aws_s3_acl).strip(),
      aws_meals_table=env.get("AWS_MEALS_TABLE"),
      aws_whitelist_tables=whitelist_tables or collections,
      jwt_secret_key=env.get("JWT_SECRET_KEY", defaults.jwt_secret_key),
      jwt_expiration_minutes=_safe_int(env.get("JWT_EXPIRATION_MINUTES"), defaults.jwt_expiration_minutes),
      magic_link_expiration_minutes=_safe_int(
        env.get("MAGIC_LINK_EXPIRATION_MINUTES"), defaults.magic_link_expiration_minutes
      ),
      gemini_api_key=(env.get("GEMINI_API_KEY") or "").strip(),
      gemini_model=(env.get("GEMINI_MODEL") or defaults.gemini_model).strip(),
      gemini_timeout=_safe_int(env.get("GEMINI_TIMEOUT"), defaults.gemini_timeout),
      allow_list=tuple(email.lower() for email in _split_list(env.get("ALLOW_LIST"))),
      whitelist_collections=collections,
      access_cache_days=_safe_int(env.get("ACCESS_CACHE_DAYS"), defaults.access_cache_days),
      rate_limit_window_seconds=_safe_int(
        env.get("RATE_LIMIT_WINDOW_SECONDS"), defaults.rate_limit_window_seconds
      ),
      rate_limit_max_requests=_safe_int(env.get("RATE_LIMIT_MAX_REQUESTS"), defaults.rate_limit_max_requests),
      rate_limit_sweep_threshold=_safe_int(
        env.get("RATE_LIMIT_SWEEP_THRESHOLD"), defaults.rate_limit_sweep_threshold
      ),
      guarded_routes=_split_list(env.get("GUARDED_ROUTES")) or defaults.guarded_routes,
      analysis_rate_limit_window_seconds=_safe_int(
        env.get("ANALYSIS_RATE_LIMIT_WINDOW_SECONDS"), defaults.analysis_rate_limit_window_seconds
      ),
      analysis_rate_limit_max_requests=_safe_int(
        env.get("ANALYSIS_RATE_LIMIT_MAX_REQUESTS"), defaults.analysis_rate_limit_max_requests
      ),
      max_analysis_payload_chars=_safe_int(
        env.get("MAX_ANALYSIS_PAYLOAD_CHARS"), defaults.max_analysis_payload_chars
      ),
      monthly_upload_limit=_safe_int(env.get("MONTHLY_UPLOAD_LIMIT"), defaults.monthly_upload_limit),
      mail_backend=env.get("MAIL_BACKEND", defaults.mail_backend).strip().lower(),
      mail_sender=env.get("MAIL_SENDER", defaults.mail_sender).strip(),
      public_base_url=env.get("PUBLIC_BASE_URL", defaults.public_base_url).rstrip("/"),
      redirect_result_timeout_seconds=_safe_float(
        env.get("REDIRECT_RESULT_TIMEOUT_SECONDS"), defaults.redirect_result_timeout_seconds
      ),
      debug_console=_safe_bool(env.get("DEBUG_CONSOLE")),
      log_buffer_capacity=_safe_int(env.get("LOG_BUFFER_CAPACITY"), defaults.log_buffer_capacity),
      cors_origins=_split_list(env.get("CORS_ORIGINS")) or ("*",),
    )

  def with_overrides(self, **overrides: Any) -> "Settings":
    """Return a copy with the given fields replaced."""
    return replace(self, **overrides)


__all__ = ["Settings", "DEFAULT_GEMINI_MODEL", "DEFAULT_GUARDED_ROUTES"]
