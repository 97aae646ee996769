from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hrsecurity.logging import get_logger

logger = get_logger(__name__)


class MfaPolicy(str, Enum):
    """Tenant-wide MFA requirement."""

    OFF = "off"
    OPTIONAL = "optional"
    REQUIRED = "required"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _parse_csv(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return list(value)


class Settings(BaseModel):
    """Runtime settings for the account security service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/hrsecurity", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/hrsecurity", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    default_tenant_id: str = env_field("default", "DEFAULT_TENANT_ID")

    # Lockout guard
    max_failed_attempts: int = env_field(
        5, "MAX_FAILED_ATTEMPTS", description="Failed password checks before lockout"
    )
    lockout_minutes: int = env_field(
        15, "LOCKOUT_MINUTES", description="How long a locked account rejects logins"
    )

    # MFA
    mfa_issuer: str = env_field("HeadOfficeOS", "MFA_ISSUER")
    mfa_pending_minutes: int = env_field(
        10,
        "MFA_PENDING_MINUTES",
        description="Lifetime of an unconfirmed enrollment secret",
    )
    mfa_challenge_minutes: int = env_field(
        5,
        "MFA_CHALLENGE_MINUTES",
        description="Time allowed between password check and MFA code at login",
    )
    mfa_encryption_key: str | None = env_field(
        None, "MFA_ENCRYPTION_KEY", validate_default=True
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")

    # Password hashing (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost_kib: int = env_field(65536, "ARGON2_MEMORY_COST_KIB")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Audit and admin reporting
    audit_default_limit: int = env_field(50, "AUDIT_DEFAULT_LIMIT")
    audit_max_limit: int = env_field(200, "AUDIT_MAX_LIMIT")
    inactive_account_days: int = env_field(90, "INACTIVE_ACCOUNT_DAYS")

    # Notifications (email); when smtp_host is unset mails are logged instead
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("HeadOfficeOS Security", "EMAIL_FROM_NAME")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        return _parse_csv(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("max_failed_attempts", "lockout_minutes", "backup_code_count")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("mfa_encryption_key")
    @classmethod
    def _ensure_mfa_encryption_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so stored MFA secrets stay decryptable across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/hrsecurity"))
        key_path = fs_root / ".mfa_encryption_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "mfa_key_read_failed", error=str(exc), path=str(key_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".mfa_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("mfa_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist MFA encryption key; set MFA_ENCRYPTION_KEY or make SHARED_FS_ROOT writable"
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
