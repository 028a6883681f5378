from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from trustgate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_IP_WHITELIST = "127.0.0.1,0:0:0:0:0:0:0:1,::1"
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the trust boundary."""

    shared_fs_root: str = env_field("/srv/trustgate", "SHARED_FS_ROOT")
    persist_state: bool = env_field(
        False,
        "PERSIST_STATE",
        description="Persist the credential store to SHARED_FS_ROOT/state as JSON",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("trustgate", "JWT_ISSUER")
    session_ttl_minutes: int = env_field(
        24 * 60, "SESSION_TTL_MINUTES", description="Lifetime of a session token"
    )
    reset_token_ttl_minutes: int = env_field(
        15, "RESET_TOKEN_TTL_MINUTES", description="Lifetime of a password-reset token"
    )

    max_failed_attempts: int = env_field(
        5,
        "MAX_FAILED_ATTEMPTS",
        description="Consecutive failed logins before the account is blocked",
    )
    account_extension_days: int = env_field(
        365,
        "ACCOUNT_EXTENSION_DAYS",
        description="Days added to account expiry when an administrator unlocks it",
    )
    account_default_validity_days: int = env_field(
        365,
        "ACCOUNT_DEFAULT_VALIDITY_DAYS",
        description="Account validity granted at signup",
    )

    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_public_max_requests: int = env_field(300, "RATE_LIMIT_PUBLIC_MAX_REQUESTS")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_ip_whitelist: str = env_field(
        DEFAULT_IP_WHITELIST,
        "RATE_LIMIT_IP_WHITELIST",
        description="Comma separated client keys that bypass the rate limiter",
    )
    trust_forwarded_for: bool = env_field(
        True,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For entry as the client key",
    )

    revocation_sweep_interval_seconds: int = env_field(
        3600, "REVOCATION_SWEEP_INTERVAL_SECONDS"
    )
    session_sweep_interval_seconds: int = env_field(1800, "SESSION_SWEEP_INTERVAL_SECONDS")

    mfa_issuer: str = env_field("trustgate", "MFA_ISSUER")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting MFA secrets; falls back to JWT_SECRET",
    )
    count_malformed_mfa_as_failure: bool = env_field(
        False,
        "COUNT_MALFORMED_MFA_AS_FAILURE",
        description="Count a non-numeric MFA code that is not a recovery code as a failed login",
    )
    reset_requires_mfa: bool = env_field(
        True,
        "RESET_REQUIRES_MFA",
        description="Require MFA verification of the reset token for MFA-enabled accounts",
    )

    bootstrap_admin_username: str | None = env_field(None, "BOOTSTRAP_ADMIN_USERNAME")
    bootstrap_admin_email: str | None = env_field(None, "BOOTSTRAP_ADMIN_EMAIL")
    bootstrap_admin_password: str | None = env_field(None, "BOOTSTRAP_ADMIN_PASSWORD")

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

    @property
    def ip_whitelist(self) -> list[str]:
        return [item.strip() for item in self.rate_limit_ip_whitelist.split(",") if item.strip()]

    @field_validator(
        "session_ttl_minutes",
        "reset_token_ttl_minutes",
        "max_failed_attempts",
        "rate_limit_max_requests",
        "rate_limit_public_max_requests",
        "rate_limit_window_seconds",
        "revocation_sweep_interval_seconds",
        "session_sweep_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/trustgate"))
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
                if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
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
