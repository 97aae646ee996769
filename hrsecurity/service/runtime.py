from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from hrsecurity.config import get_settings, reset_settings_cache
from hrsecurity.logging import get_logger
from hrsecurity.service.audit import AuditLog
from hrsecurity.service.auth import AuthService
from hrsecurity.service.lockout import LockoutGuard
from hrsecurity.service.mfa import MfaEngine
from hrsecurity.service.notifications import EmailNotifier
from hrsecurity.service.passwords import PasswordVerifier, build_hasher
from hrsecurity.service.policy import SecurityPolicyService
from hrsecurity.service.sessions import SessionRegistry
from hrsecurity.storage.memory import MemoryStore
from hrsecurity.storage.postgres import PostgresStore
from hrsecurity.storage.redis_cache import MemorySessionStore, RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.session_store = self._build_session_store()

        hasher = build_hasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost_kib=self.settings.argon2_memory_cost_kib,
            parallelism=self.settings.argon2_parallelism,
        )
        self.passwords = PasswordVerifier(hasher)
        self.notifier = EmailNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.audit = AuditLog(
            self.store,
            default_limit=self.settings.audit_default_limit,
            max_limit=self.settings.audit_max_limit,
        )
        self.policies = SecurityPolicyService(self.store, self.audit)
        self.lockout = LockoutGuard(
            self.store,
            self.audit,
            self.notifier,
            max_attempts=self.settings.max_failed_attempts,
            lockout_minutes=self.settings.lockout_minutes,
        )
        self.mfa = MfaEngine(
            self.store,
            self.session_store,
            self.policies,
            self.audit,
            self.passwords,
            issuer=self.settings.mfa_issuer,
            pending_minutes=self.settings.mfa_pending_minutes,
            backup_code_count=self.settings.backup_code_count,
            notifier=self.notifier,
        )
        self.sessions = SessionRegistry(self.store, self.session_store, self.audit)
        self.auth = AuthService(
            self.store,
            self.session_store,
            self.settings,
            passwords=self.passwords,
            lockout=self.lockout,
            mfa=self.mfa,
            sessions=self.sessions,
            policies=self.policies,
            audit=self.audit,
            notifier=self.notifier,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.session_store, RedisSessionStore),
            email_configured=self.notifier.is_configured,
        )

    def _build_session_store(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                session_store = RedisSessionStore(self.settings.redis_url)
                session_store.verify_connection()
                return session_store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions and MFA challenges; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions and MFA challenges "
                "are process-local and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemorySessionStore()

    async def close(self) -> None:
        await self.session_store.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path once the runtime
    exists, and a locked re-check while creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.session_store, RedisSessionStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.session_store.close())
            except RuntimeError:
                asyncio.run(runtime.session_store.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
