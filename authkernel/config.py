from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        2.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Deadline in seconds for every record store call",
    )
    shared_fs_root: str = env_field("/srv/authkernel", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime reset and in-process fallbacks",
    )

    # Tokens
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )

    # One-time passcodes and attestation challenges
    otp_length: int = env_field(5, "OTP_LENGTH")
    otp_ttl_seconds: int = env_field(600, "OTP_TTL_SECONDS")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    challenge_ttl_seconds: int = env_field(300, "CHALLENGE_TTL_SECONDS")
    password_reset_grant_ttl_seconds: int = env_field(
        600, "PASSWORD_RESET_GRANT_TTL_SECONDS"
    )

    # Per-route rate limits, requests per window per client IP
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    signup_rate_limit: int = env_field(5, "SIGNUP_RATE_LIMIT")
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    forgot_password_rate_limit: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT")
    refresh_rate_limit: int = env_field(20, "REFRESH_RATE_LIMIT")
    init_rate_limit: int = env_field(30, "INIT_RATE_LIMIT")
    default_rate_limit: int = env_field(30, "DEFAULT_RATE_LIMIT")
    # Per-route windows; unset routes use RATE_LIMIT_WINDOW_SECONDS
    init_rate_window_seconds: int | None = env_field(None, "INIT_RATE_WINDOW_SECONDS")
    signup_rate_window_seconds: int | None = env_field(None, "SIGNUP_RATE_WINDOW_SECONDS")
    login_rate_window_seconds: int | None = env_field(None, "LOGIN_RATE_WINDOW_SECONDS")
    forgot_password_rate_window_seconds: int | None = env_field(
        None, "FORGOT_PASSWORD_RATE_WINDOW_SECONDS"
    )
    refresh_rate_window_seconds: int | None = env_field(None, "REFRESH_RATE_WINDOW_SECONDS")

    # Outbound delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Support", "EMAIL_FROM_NAME")
    whatsapp_api_url: str | None = env_field(None, "WHATSAPP_API_URL")
    whatsapp_api_token: str | None = env_field(None, "WHATSAPP_API_TOKEN")

    # External identity providers
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    apple_client_id: str | None = env_field(None, "APPLE_CLIENT_ID")
    apple_team_id: str | None = env_field(None, "APPLE_TEAM_ID")
    apple_key_id: str | None = env_field(None, "APPLE_KEY_ID")
    apple_private_key: str | None = env_field(
        None,
        "APPLE_PRIVATE_KEY",
        description="PEM encoded ES256 key used to sign the client secret for code exchange",
    )

    # App attestation metadata echoed to verified clients
    app_bundle_id: str | None = env_field(None, "APP_BUNDLE_ID")
    app_team_id: str | None = env_field(None, "APP_TEAM_ID")
    app_version: str | None = env_field(None, "APP_VERSION")

    support_email: str = env_field("support@example.com", "SUPPORT_EMAIL")
    restricted_email_domains: str = env_field(
        "",
        "RESTRICTED_EMAIL_DOMAINS",
        description="Comma separated email domains that may not sign up",
    )
    cors_allow_origins: str = env_field("*", "CORS_ALLOW_ORIGINS")

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

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if value < 4 or value > 6:
            raise ValueError("OTP_LENGTH must be between 4 and 6")
        return value

    @field_validator("otp_max_attempts", "otp_ttl_seconds", "challenge_ttl_seconds")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        fs_root = Path(self.shared_fs_root)
        if not self.jwt_access_secret:
            self.jwt_access_secret = _load_or_create_secret(fs_root, "access")
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = _load_or_create_secret(fs_root, "refresh")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            logger.warning(
                "jwt_secrets_shared",
                message="Access and refresh tokens are signed with the same secret",
            )
        return self

    @property
    def restricted_domains(self) -> set[str]:
        return {
            domain.strip().lower().lstrip("@")
            for domain in self.restricted_email_domains.split(",")
            if domain.strip()
        }

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


def _load_or_create_secret(fs_root: Path, kind: str) -> str:
    """Read the persisted signing secret for ``kind``, generating it on first use.

    The secret is written atomically so that concurrent workers starting at the
    same time converge on one value, keeping issued tokens valid across restarts.
    """
    secret_dir = fs_root / ".jwt_secrets"
    secret_path = secret_dir / kind
    try:
        secret_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(secret_dir, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning(
            "jwt_secret_dir_setup",
            error=str(exc),
            path=str(secret_dir),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(secret_dir), prefix=f".{kind}_", suffix=".tmp"
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
            f"Unable to persist JWT {kind} secret; set JWT_{kind.upper()}_SECRET "
            "or make SHARED_FS_ROOT writable"
        ) from exc
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
