from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from gamcauth.logging import get_logger

logger = get_logger(__name__)

# Bounds for the password-reset token lifetime, in minutes
RESET_TTL_MIN_MINUTES = 5
RESET_TTL_MAX_MINUTES = 120
MAX_CLOCK_SKEW_SECONDS = 120
MIN_SECRET_LENGTH = 32

_SECRET_FILES = {
    "jwt_secret": ".jwt_secret",
    "jwt_refresh_secret": ".jwt_refresh_secret",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating one on first use."""
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gamc-auth"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=filename + "_", suffix=".tmp")
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
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    app_env: str = env_field("development", "APP_ENV")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    shared_fs_root: str = env_field("/srv/gamc-auth", "SHARED_FS_ROOT")
    use_memory_kv: bool = env_field(False, "USE_MEMORY_KV")
    persist_memory_store: bool = env_field(False, "PERSIST_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: in-memory backends, relaxed secret checks.",
    )

    # Token issuance
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("gamc-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("gamc-system", "JWT_AUDIENCE")
    jwt_refresh_audience: str = env_field("gamc-refresh", "JWT_REFRESH_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES")
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")

    # Password reset
    reset_token_ttl_minutes: int = env_field(
        30,
        "RESET_TOKEN_TTL_MINUTES",
        description="Reset token lifetime; must stay within [5, 120] minutes.",
    )
    reset_cooldown_seconds: int = env_field(300, "RESET_COOLDOWN_SECONDS")
    reset_allowed_domain: str = env_field("gamc.gov.bo", "RESET_ALLOWED_DOMAIN")
    reset_history_limit: int = env_field(5, "RESET_HISTORY_LIMIT")
    max_security_question_attempts: int = env_field(3, "MAX_SECURITY_QUESTION_ATTEMPTS")
    max_security_questions_per_user: int = env_field(3, "MAX_SECURITY_QUESTIONS_PER_USER")
    security_answer_pepper: str = env_field("", "SECURITY_ANSWER_PEPPER")

    # Throttling
    login_rate_limit_per_window: int = env_field(10, "LOGIN_RATE_LIMIT_PER_WINDOW")
    login_rate_limit_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("GAMC Intranet", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:5173", "APP_BASE_URL")

    cors_allow_origins: str = env_field(
        "http://localhost:3000,http://localhost:5173", "CORS_ALLOW_ORIGINS"
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

    @field_validator("jwt_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        return _load_or_create_secret(_SECRET_FILES[info.field_name])

    @field_validator("reset_token_ttl_minutes")
    @classmethod
    def _validate_reset_ttl(cls, value: int) -> int:
        if not RESET_TTL_MIN_MINUTES <= value <= RESET_TTL_MAX_MINUTES:
            raise ValueError(
                f"reset token TTL must be between {RESET_TTL_MIN_MINUTES} and "
                f"{RESET_TTL_MAX_MINUTES} minutes, got {value}"
            )
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _validate_leeway(cls, value: int) -> int:
        if not 0 <= value <= MAX_CLOCK_SKEW_SECONDS:
            raise ValueError(f"jwt leeway must be between 0 and {MAX_CLOCK_SKEW_SECONDS} seconds")
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_minutes",
        "reset_cooldown_seconds",
        "max_security_question_attempts",
        "max_security_questions_per_user",
        "login_rate_limit_per_window",
        "login_rate_limit_window_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("reset_allowed_domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        return value.strip().lower().lstrip("@")

    @model_validator(mode="after")
    def _validate_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if not self.test_mode:
            for name in ("jwt_secret", "jwt_refresh_secret"):
                if len(getattr(self, name)) < MIN_SECRET_LENGTH:
                    raise ValueError(f"{name} must be at least {MIN_SECRET_LENGTH} characters")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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
