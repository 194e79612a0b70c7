from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pixora_auth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; only PRODUCTION enforces hardened secrets."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    app_env: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/pixora_auth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/pixora", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets and the in-process cache.",
    )
    storage_timeout_seconds: float = env_field(
        5.0,
        "STORAGE_TIMEOUT_SECONDS",
        description="Upper bound for acquiring a DB connection and for each statement",
    )
    cache_timeout_seconds: float = env_field(5.0, "CACHE_TIMEOUT_SECONDS")

    # Token signing. Access and refresh tokens use distinct secrets.
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_min_secret_length: int = env_field(32, "JWT_MIN_SECRET_LENGTH")
    jwt_issuer: str = env_field("pixora-craftt", "JWT_ISSUER")
    jwt_audience: str = env_field("pixora-craftt-app", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    remember_me_refresh_ttl_days: int = env_field(
        30,
        "REMEMBER_ME_REFRESH_TTL_DAYS",
        description="Refresh token TTL when the client asks to be remembered",
    )
    email_verification_ttl_minutes: int = env_field(30, "EMAIL_VERIFICATION_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")

    # Lockout policy
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")

    # Two-factor
    enable_mfa: bool = env_field(True, "ENABLE_MFA")
    mfa_issuer: str = env_field("Pixora Craftt", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to the access secret",
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Pixora Craftt", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    send_login_alerts: bool = env_field(False, "SEND_LOGIN_ALERTS")

    # Rate limits (fixed window, per key)
    login_rate_limit_per_window: int = env_field(10, "LOGIN_RATE_LIMIT")
    register_rate_limit_per_window: int = env_field(5, "REGISTER_RATE_LIMIT")
    reset_rate_limit_per_window: int = env_field(5, "RESET_RATE_LIMIT")
    mfa_rate_limit_per_window: int = env_field(10, "MFA_RATE_LIMIT")
    rate_limit_window_seconds: int = env_field(900, "RATE_LIMIT_WINDOW_SECONDS")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "remember_me_refresh_ttl_days",
        "email_verification_ttl_minutes",
        "password_reset_ttl_minutes",
        "max_failed_logins",
        "lockout_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        # Production deployments must supply both secrets explicitly; the
        # token service refuses to start otherwise.
        if self.is_production:
            return self
        if not self.jwt_access_secret:
            self.jwt_access_secret = _load_or_create_secret(
                Path(self.shared_fs_root), ".jwt_access_secret"
            )
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = _load_or_create_secret(
                Path(self.shared_fs_root), ".jwt_refresh_secret"
            )
        return self


def _load_or_create_secret(fs_root: Path, filename: str) -> str:
    """Read a persisted signing secret or generate and persist a new one.

    Keeps development tokens valid across restarts without anyone having to
    configure secrets by hand.
    """
    secret_path = fs_root / filename
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g. in a container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=filename, suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set JWT_ACCESS_SECRET/JWT_REFRESH_SECRET "
            "or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("signing_secret_generated", path=str(secret_path))
    return generated


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
