from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from hrsecurity.logging import get_logger, sanitize_error_message
from hrsecurity.storage.errors import StoreUnavailable
from hrsecurity.storage.models import SessionRecord, as_utc

logger = get_logger(__name__)


def _ttl_seconds(expires_at: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least one so Redis accepts it."""
    expires_at = as_utc(expires_at) or datetime.now(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


class RedisSessionStore:
    """Sessions, login MFA challenges and unconfirmed enrolment secrets kept in Redis."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"auth:session:{session_id}"

    @staticmethod
    def _challenge_key(account_id: str) -> str:
        return f"auth:mfa_challenge:{account_id}"

    @staticmethod
    def _account_key(account_id: str) -> str:
        return f"auth:account_sessions:{account_id}"

    @staticmethod
    def _pending_key(session_id: str) -> str:
        return f"auth:mfa_pending:{session_id}"

    def _unavailable(self, exc: Exception) -> StoreUnavailable:
        logger.error(
            "redis_unavailable",
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return StoreUnavailable("redis")

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def save(self, record: SessionRecord) -> None:
        ttl = _ttl_seconds(record.expires_at)
        try:
            pipe = self.client.pipeline()
            pipe.set(self._session_key(record.id), json.dumps(record.to_dict()), ex=ttl)
            # Index per account so revoking an account reaches sessions with no device row
            pipe.sadd(self._account_key(record.account_id), record.id)
            pipe.expire(self._account_key(record.account_id), ttl)
            await pipe.execute()
        except RedisError as exc:
            raise self._unavailable(exc) from exc

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        try:
            raw = await self.client.get(self._session_key(session_id))
        except RedisError as exc:
            raise self._unavailable(exc) from exc
        if not raw:
            return None
        try:
            return SessionRecord.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("session_record_corrupt", session_id=session_id[:8])
            return None

    async def delete(self, session_id: str, account_id: Optional[str] = None) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.delete(self._session_key(session_id))
            pipe.delete(self._pending_key(session_id))
            if account_id:
                pipe.srem(self._account_key(account_id), session_id)
            await pipe.execute()
        except RedisError as exc:
            raise self._unavailable(exc) from exc

    async def delete_many(
        self, session_ids: Iterable[str], account_id: Optional[str] = None
    ) -> int:
        session_ids = [sid for sid in session_ids if sid]
        if not session_ids:
            return 0
        try:
            pipe = self.client.pipeline()
            for session_id in session_ids:
                pipe.delete(self._session_key(session_id))
            for session_id in session_ids:
                pipe.delete(self._pending_key(session_id))
            if account_id:
                pipe.srem(self._account_key(account_id), *session_ids)
            results = await pipe.execute()
        except RedisError as exc:
            raise self._unavailable(exc) from exc
        return sum(int(r or 0) for r in results[: len(session_ids)])

    async def delete_account_sessions(self, account_id: str) -> int:
        """Drop every session indexed under ``account_id`` and the index itself."""
        try:
            session_ids = await self.client.smembers(self._account_key(account_id))
        except RedisError as exc:
            raise self._unavailable(exc) from exc
        removed = await self.delete_many(sorted(session_ids), account_id)
        try:
            await self.client.delete(self._account_key(account_id))
        except RedisError as exc:
            raise self._unavailable(exc) from exc
        return removed

    async def set_mfa_challenge(
        self, account_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        try:
            await self.client.set(
                self._challenge_key(account_id), json.dumps(payload), ex=max(1, ttl_seconds)
            )
        except RedisError as exc:
            raise self._unavailable(exc) from exc

    async def get_mfa_challenge(self, account_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(self._challenge_key(account_id))
        except RedisError as exc:
            raise self._unavailable(exc) from exc
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    async def clear_mfa_challenge(self, account_id: str) -> None:
        try:
            await self.client.delete(self._challenge_key(account_id))
        except RedisError as exc:
            raise self._unavailable(exc) from exc

    async def set_mfa_pending(self, session_id: str, secret: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(self._pending_key(session_id), secret, ex=max(1, ttl_seconds))
        except RedisError as exc:
            raise self._unavailable(exc) from exc

    async def get_mfa_pending(self, session_id: str) -> Optional[str]:
        try:
            return await self.client.get(self._pending_key(session_id)) or None
        except RedisError as exc:
            raise self._unavailable(exc) from exc

    async def clear_mfa_pending(self, session_id: str) -> None:
        try:
            await self.client.delete(self._pending_key(session_id))
        except RedisError as exc:
            raise self._unavailable(exc) from exc

    async def close(self) -> None:
        await self.client.aclose()


class MemorySessionStore:
    """Process-local session store used in TEST_MODE or the dev fallback.

    Guarded by a thread lock rather than an asyncio lock because the test
    client drives requests from more than one event loop.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self._challenges: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._pending: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def save(self, record: SessionRecord) -> None:
        with self._lock:
            self._sessions[record.id] = SessionRecord.from_dict(record.to_dict())

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return None
            if as_utc(record.expires_at) <= datetime.now(timezone.utc):
                self._sessions.pop(session_id, None)
                return None
            return SessionRecord.from_dict(record.to_dict())

    async def delete(self, session_id: str, account_id: Optional[str] = None) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            self._pending.pop(session_id, None)

    async def delete_many(
        self, session_ids: Iterable[str], account_id: Optional[str] = None
    ) -> int:
        removed = 0
        with self._lock:
            for session_id in session_ids:
                self._pending.pop(session_id, None)
                if self._sessions.pop(session_id, None) is not None:
                    removed += 1
        return removed

    async def delete_account_sessions(self, account_id: str) -> int:
        with self._lock:
            owned = [sid for sid, r in self._sessions.items() if r.account_id == account_id]
        return await self.delete_many(owned, account_id)

    async def set_mfa_challenge(
        self, account_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._challenges[account_id] = (
                time.monotonic() + max(1, ttl_seconds),
                dict(payload),
            )

    async def get_mfa_challenge(self, account_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._challenges.get(account_id)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= time.monotonic():
                self._challenges.pop(account_id, None)
                return None
            return dict(payload)

    async def clear_mfa_challenge(self, account_id: str) -> None:
        with self._lock:
            self._challenges.pop(account_id, None)

    async def set_mfa_pending(self, session_id: str, secret: str, ttl_seconds: int) -> None:
        with self._lock:
            self._pending[session_id] = (time.monotonic() + max(1, ttl_seconds), secret)

    async def get_mfa_pending(self, session_id: str) -> Optional[str]:
        with self._lock:
            entry = self._pending.get(session_id)
            if entry is None:
                return None
            expires_at, secret = entry
            if expires_at <= time.monotonic():
                self._pending.pop(session_id, None)
                return None
            return secret

    async def clear_mfa_pending(self, session_id: str) -> None:
        with self._lock:
            self._pending.pop(session_id, None)

    async def close(self) -> None:
        return None
