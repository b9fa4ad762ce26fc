from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tradegate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


@dataclass(frozen=True)
class LockoutThreshold:
    """Failed-attempt count at which a lock of ``minutes`` is applied."""

    attempts: int
    minutes: int


class Settings(BaseModel):
    """Runtime settings for the identity and access service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tradegate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tradegate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: MFA codes echoed in responses, no SMTP.",
    )

    # Lockout escalation
    lockout_first_attempts: int = env_field(5, "LOCKOUT_FIRST_ATTEMPTS")
    lockout_first_minutes: int = env_field(15, "LOCKOUT_FIRST_MINUTES")
    lockout_second_attempts: int = env_field(10, "LOCKOUT_SECOND_ATTEMPTS")
    lockout_second_minutes: int = env_field(60, "LOCKOUT_SECOND_MINUTES")
    lockout_long_attempts: int = env_field(15, "LOCKOUT_LONG_ATTEMPTS")
    lockout_long_minutes: int = env_field(24 * 60, "LOCKOUT_LONG_MINUTES")

    # Session lifetimes
    session_default_hours: int = env_field(
        8, "SESSION_DEFAULT_HOURS", description="Rolling expiry for a normal login"
    )
    session_remember_me_days: int = env_field(
        30, "SESSION_REMEMBER_ME_DAYS", description="Rolling expiry with remember-me"
    )
    session_absolute_hours: int = env_field(
        24, "SESSION_ABSOLUTE_HOURS", description="Hard cap for a normal login"
    )
    session_remember_me_absolute_days: int = env_field(
        30,
        "SESSION_REMEMBER_ME_ABSOLUTE_DAYS",
        description="Hard cap for a remember-me login",
    )
    default_max_sessions: int = env_field(
        5,
        "DEFAULT_MAX_SESSIONS",
        description="Per-user session limit when neither user nor company sets one",
    )

    # Second factor
    mfa_code_length: int = env_field(6, "MFA_CODE_LENGTH")
    mfa_code_expiry_minutes: int = env_field(5, "MFA_CODE_EXPIRY_MINUTES")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_recovery_code_count: int = env_field(10, "MFA_RECOVERY_CODE_COUNT")
    trusted_device_days: int = env_field(30, "TRUSTED_DEVICE_DAYS")

    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    permission_cache_ttl_seconds: int = env_field(300, "PERMISSION_CACHE_TTL_SECONDS")

    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tradegate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: str = env_field(
        "", "CORS_ALLOW_ORIGINS", description="Comma-separated list of allowed origins"
    )
    token_secret: str = env_field(
        None,
        "TOKEN_SECRET",
        validate_default=True,
        description="Key for hashing reset and device-trust tokens; generated if unset",
    )

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

    @field_validator(
        "mfa_code_length",
        "mfa_max_attempts",
        "mfa_recovery_code_count",
        "default_max_sessions",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def _validate_lockout_ladder(self) -> "Settings":
        attempts = [
            self.lockout_first_attempts,
            self.lockout_second_attempts,
            self.lockout_long_attempts,
        ]
        if attempts[0] < 1 or attempts != sorted(set(attempts)):
            raise ValueError("lockout thresholds must be positive and strictly increasing")
        return self

    @field_validator("token_secret", mode="before")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so stored token hashes stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tradegate"))
        secret_path = fs_root / ".token_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "token_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "token_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".token_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "token_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist token secret; set TOKEN_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    # Derived values

    @property
    def lockout_ladder(self) -> list[LockoutThreshold]:
        """Thresholds ordered from the longest lock to the shortest."""
        return [
            LockoutThreshold(self.lockout_long_attempts, self.lockout_long_minutes),
            LockoutThreshold(self.lockout_second_attempts, self.lockout_second_minutes),
            LockoutThreshold(self.lockout_first_attempts, self.lockout_first_minutes),
        ]

    def session_lifetimes(self, remember_me: bool) -> tuple[timedelta, timedelta]:
        """Return ``(rolling, absolute)`` lifetimes for a new session."""
        if remember_me:
            return (
                timedelta(days=self.session_remember_me_days),
                timedelta(days=self.session_remember_me_absolute_days),
            )
        return (
            timedelta(hours=self.session_default_hours),
            timedelta(hours=self.session_absolute_hours),
        )

    @property
    def email_configured(self) -> bool:
        return bool(self.smtp_host and (self.email_from_address or self.smtp_user))


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
