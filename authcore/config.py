from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: no persistence to disk, no SMTP.",
    )
    # Signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    # Refresh tokens
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    refresh_token_remember_days: int = env_field(
        30,
        "REFRESH_TOKEN_REMEMBER_DAYS",
        gt=0,
        description="Refresh token lifetime when the caller asks to be remembered",
    )
    # Lockout
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS", gt=0)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", gt=0)
    # Passwords
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=8)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", gt=0)
    password_history_size: int = env_field(5, "PASSWORD_HISTORY_SIZE", ge=0)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", gt=0)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", gt=0)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", gt=0)
    # MFA
    mfa_issuer: str = env_field("AuthCore", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; falls back to JWT_SECRET",
    )
    totp_step_seconds: int = env_field(30, "TOTP_STEP_SECONDS", gt=0)
    totp_window: int = env_field(1, "TOTP_WINDOW", ge=0)
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", gt=0)
    backup_code_low_watermark: int = env_field(3, "BACKUP_CODE_LOW_WATERMARK", ge=0)
    pending_session_ttl_minutes: int = env_field(10, "PENDING_SESSION_TTL_MINUTES", gt=0)
    pending_session_max_attempts: int = env_field(5, "PENDING_SESSION_MAX_ATTEMPTS", gt=0)
    # Account lifecycle
    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", gt=0)
    password_reset_ttl_minutes: int = env_field(10, "PASSWORD_RESET_TTL_MINUTES", gt=0)
    # Rate limits, per client address
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT", ge=0)
    login_rate_window_seconds: int = env_field(900, "LOGIN_RATE_WINDOW_SECONDS", gt=0)
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT", ge=0)
    register_rate_window_seconds: int = env_field(3600, "REGISTER_RATE_WINDOW_SECONDS", gt=0)
    password_reset_rate_limit: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT", ge=0)
    password_reset_rate_window_seconds: int = env_field(
        3600, "PASSWORD_RESET_RATE_WINDOW_SECONDS", gt=0
    )
    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthCore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @field_validator("password_max_length")
    @classmethod
    def _validate_max_length(cls, value: int, info) -> int:
        min_length = info.data.get("password_min_length", 8)
        if value < min_length:
            raise ValueError("PASSWORD_MAX_LENGTH must not be below PASSWORD_MIN_LENGTH")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
