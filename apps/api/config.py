"""Service configuration loaded from the environment"""
import logging
import os
import re
from datetime import timedelta
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

logger = logging.getLogger(__name__)

_DEV_ACCESS_SECRET = "dev-access-secret-change-me"
_DEV_REFRESH_SECRET = "dev-refresh-secret-change-me"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "": "seconds"}


def parse_duration(value: str) -> timedelta:
    """Parse a TTL such as ``30m``, ``12h`` or ``7d`` (bare numbers are seconds)."""
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime settings"""
    environment: str = "development"
    port: int = 5000

    database_url: str = "sqlite:///./radiology_lab.db"
    db_echo: bool = False

    jwt_secret: str = _DEV_ACCESS_SECRET
    jwt_expires_in: timedelta = timedelta(minutes=30)
    jwt_refresh_secret: str = _DEV_REFRESH_SECRET
    jwt_refresh_expires_in: timedelta = timedelta(days=7)
    jwt_algorithm: str = "HS256"

    allowed_origins: List[str] = ["http://localhost:3000"]

    rate_limit_enabled: bool = True
    rate_limit_window_ms: int = 900000
    rate_limit_max: int = 100

    log_level: str = "INFO"

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_secure: bool = False
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    email_from: str = "no-reply@radiology-lab.local"

    frontend_url: str = "http://localhost:3000"
    upload_dir: str = "./uploads"
    redis_url: Optional[str] = None

    totp_issuer: str = "RadiologyLab"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def default_rate_limit(self) -> str:
        window_seconds = max(1, self.rate_limit_window_ms // 1000)
        return f"{self.rate_limit_max}/{window_seconds} seconds"


def load_settings() -> Settings:
    environment = os.getenv("ENVIRONMENT", os.getenv("NODE_ENV", "development"))
    settings = Settings(
        environment=environment,
        port=int(os.getenv("PORT", "5000")),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./radiology_lab.db"),
        db_echo=_env_bool("DB_ECHO", "false"),
        jwt_secret=os.getenv("JWT_SECRET") or _DEV_ACCESS_SECRET,
        jwt_expires_in=parse_duration(os.getenv("JWT_EXPIRES_IN", "30m")),
        jwt_refresh_secret=os.getenv("JWT_REFRESH_SECRET") or _DEV_REFRESH_SECRET,
        jwt_refresh_expires_in=parse_duration(os.getenv("JWT_REFRESH_EXPIRES_IN", "7d")),
        allowed_origins=[
            origin.strip()
            for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
            if origin.strip()
        ],
        rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", "true"),
        rate_limit_window_ms=int(os.getenv("RATE_LIMIT_WINDOW_MS", "900000")),
        rate_limit_max=int(os.getenv("RATE_LIMIT_MAX", "100")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        smtp_host=os.getenv("SMTP_HOST") or None,
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_secure=_env_bool("SMTP_SECURE", "false"),
        smtp_user=os.getenv("SMTP_USER") or None,
        smtp_pass=os.getenv("SMTP_PASS") or None,
        email_from=os.getenv("EMAIL_FROM", "no-reply@radiology-lab.local"),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
        upload_dir=os.getenv("UPLOAD_DIR", "./uploads"),
        redis_url=os.getenv("REDIS_URL") or None,
    )

    missing = [
        name for name, value in (
            ("JWT_SECRET", os.getenv("JWT_SECRET")),
            ("JWT_REFRESH_SECRET", os.getenv("JWT_REFRESH_SECRET")),
        ) if not value
    ]
    if missing:
        if settings.is_production:
            raise ValueError(
                f"{', '.join(missing)} must be set in production. "
                "Generate a secure key with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
            )
        logger.warning(f"{', '.join(missing)} not set, using development secrets")

    return settings


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
