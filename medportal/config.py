"""Application configuration resolved from the environment."""

from __future__ import annotations

import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

import structlog
from platformdirs import user_data_dir

APP_NAME = "MedPortal"

DEFAULT_CORS_ORIGINS = (
    "http://localhost:5173",
    "http://localhost:5174",
)

DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024

_DEV_ENVIRONMENTS = {"development", "dev", "local", "test"}
_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.I)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}

logger = structlog.get_logger(__name__)


def data_dir() -> Path:
    """Return the directory holding the SQLite fallback and uploads."""

    override = os.getenv("MEDPORTAL_DATA_DIR")
    path = Path(override).expanduser() if override else Path(user_data_dir(APP_NAME, APP_NAME))
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_int_env(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_duration(value: str) -> timedelta:
    """Parse ``"24h"``, ``"30m"``, ``"7d"`` or bare seconds into a ``timedelta``."""

    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration {value!r}; expected e.g. '24h', '30m' or '3600'")
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _DURATION_UNITS[unit.lower()])


@dataclass(frozen=True)
class AppSettings:
    """Resolved runtime configuration for the API process."""

    environment: str
    jwt_secret: str
    jwt_expires: timedelta
    upload_dir: Path
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    cors_origins: Tuple[str, ...] = DEFAULT_CORS_ORIGINS
    serve_uploads: bool = True
    api_prefix: str = "/api"
    google_client_id: Optional[str] = None
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    sms_timeout: float = 5.0
    jwt_algorithm: str = field(default="HS256")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)


def _resolve_jwt_secret(environment: str) -> str:
    secret = os.getenv("JWT_SECRET")
    if secret:
        return secret
    if environment not in _DEV_ENVIRONMENTS:
        raise RuntimeError("JWT_SECRET must be set outside development environments")
    logger.warning("jwt_secret_generated", environment=environment)
    return secrets.token_urlsafe(48)


def load_settings() -> AppSettings:
    """Build :class:`AppSettings` from the current environment."""

    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    upload_override = os.getenv("MEDPORTAL_UPLOAD_DIR")
    upload_dir = Path(upload_override).expanduser() if upload_override else data_dir() / "uploads"

    origins = list(DEFAULT_CORS_ORIGINS)
    frontend = os.getenv("FRONTEND_URL")
    if frontend and frontend.strip() not in origins:
        origins.append(frontend.strip())

    prefix = os.getenv("MEDPORTAL_API_PREFIX", "/api").strip()
    if prefix and not prefix.startswith("/"):
        prefix = "/" + prefix

    return AppSettings(
        environment=environment,
        jwt_secret=_resolve_jwt_secret(environment),
        jwt_expires=parse_duration(os.getenv("JWT_EXPIRES_IN", "24h")),
        upload_dir=upload_dir,
        max_upload_bytes=get_int_env("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES) or DEFAULT_MAX_UPLOAD_BYTES,
        cors_origins=tuple(origins),
        serve_uploads=env_flag("MEDPORTAL_SERVE_UPLOADS", True),
        api_prefix=prefix.rstrip("/"),
        google_client_id=os.getenv("GOOGLE_CLIENT_ID") or None,
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER") or None,
        sms_timeout=get_float_env("SMS_TIMEOUT", 5.0),
    )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return the process-wide settings, resolved on first use."""

    return load_settings()


__all__ = [
    "APP_NAME",
    "AppSettings",
    "data_dir",
    "env_flag",
    "get_float_env",
    "get_int_env",
    "get_settings",
    "load_settings",
    "parse_duration",
]
