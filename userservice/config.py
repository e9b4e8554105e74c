from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from userservice.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the user service.

    Values come from the process environment first, then from a local ``.env``
    file, then from the defaults declared here.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/userservice", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/userservice", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-process token maps, no SMTP).",
    )
    cors_allow_origins: str = env_field("*", "CORS_ALLOW_ORIGINS")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("user-service", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime; bounds the window a revoked user keeps access",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    refresh_token_sweep_interval_seconds: int = env_field(
        3600,
        "REFRESH_TOKEN_SWEEP_INTERVAL_SECONDS",
        description="How often expired and revoked refresh tokens are purged",
    )

    # Brute-force lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")

    # Single-use tokens
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("User Service", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    app_name: str = env_field("User Service", "APP_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``os.environ``, falling back to a local ``.env``."""
        file_values = dotenv_values(".env")
        values: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            env_name = extra.get("env", name.upper())
            raw = os.environ.get(env_name, file_values.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "refresh_token_sweep_interval_seconds",
        "max_login_attempts",
        "lockout_duration_minutes",
        "verification_token_ttl_hours",
        "reset_token_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        return _load_or_create_secret(
            Path(os.getenv("SHARED_FS_ROOT", "/srv/userservice")) / ".jwt_secret"
        )


def _load_or_create_secret(secret_path: Path) -> str:
    """Return the signing secret stored at ``secret_path``, creating it once.

    The file is written atomically with mode 0600 so every worker sharing the
    directory signs with the same key and tokens survive restarts.
    """
    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            stored = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_unreadable", path=str(secret_path), error=str(exc))
        else:
            if len(stored) >= 32:
                return stored
            logger.warning("jwt_secret_too_short_regenerating", path=str(secret_path))

    secret = secrets.token_urlsafe(64)
    try:
        secret_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=secret_path.parent, prefix=".jwt_secret.")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", path=str(secret_path), error=str(exc))
        raise RuntimeError(
            "Cannot persist a generated JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return secret


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
