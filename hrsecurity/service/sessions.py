from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from hrsecurity.logging import get_logger
from hrsecurity.service import audit as events
from hrsecurity.service.audit import AuditLog
from hrsecurity.service.context import ClientContext
from hrsecurity.service.errors import NotFoundError, ValidationError
from hrsecurity.storage.models import Account, SessionDevice, SessionRecord, new_id, utcnow

logger = get_logger(__name__)

# Lower-case markers matched against the lower-cased User-Agent; first match
# wins because Edge advertises Chrome and Chrome advertises Safari
_BROWSERS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("Edge", ("edg/",)),
    ("Chrome", ("chrome/",)),
    ("Firefox", ("firefox/",)),
    ("Safari", ("safari",)),
    ("Internet Explorer", ("msie", "trident")),
)

# Android and iOS user agents also mention Linux or Mac OS, so they go first
_OPERATING_SYSTEMS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("Windows", ("windows",)),
    ("Android", ("android",)),
    ("iOS", ("iphone", "ipad")),
    ("macOS", ("macintosh", "mac os")),
    ("Linux", ("linux",)),
)


def parse_device_name(user_agent: Optional[str]) -> str:
    """Human label such as ``"Firefox on Windows"`` derived from a User-Agent."""
    if not user_agent:
        return "Unknown device"
    ua = user_agent.lower()
    browser = next(
        (name for name, markers in _BROWSERS if any(m in ua for m in markers)),
        "Unknown browser",
    )
    os_name = next(
        (name for name, markers in _OPERATING_SYSTEMS if any(m in ua for m in markers)),
        "Unknown OS",
    )
    return f"{browser} on {os_name}"


def _device_view(device: SessionDevice, current_session_id: Optional[str]) -> Dict[str, Any]:
    return {
        "id": device.id,
        "device_name": device.device_name,
        "ip_address": device.ip_address,
        "last_active": device.last_active,
        "created_at": device.created_at,
        "is_current": device.session_id == current_session_id,
    }


class SessionRegistry:
    """One device row per live session, paired with its session-store entry.

    Removal always deletes the device row first and the session entry second,
    so a listed device never outlives its session for long.
    """

    def __init__(self, store, session_store, audit: AuditLog) -> None:
        self.store = store
        self.session_store = session_store
        self.audit = audit

    async def create(
        self,
        account: Account,
        ttl_minutes: int,
        context: Optional[ClientContext] = None,
    ) -> Tuple[SessionRecord, SessionDevice]:
        context = context or ClientContext()
        record = SessionRecord.new(account, ttl_minutes)
        await self.session_store.save(record)
        now = utcnow()
        device = SessionDevice(
            id=new_id(),
            tenant_id=account.tenant_id,
            account_id=account.id,
            session_id=record.id,
            device_name=parse_device_name(context.user_agent),
            ip_address=context.ip_address,
            last_active=now,
            created_at=now,
        )
        try:
            device = self.store.create_session_device(device)
        except Exception:
            await self.session_store.delete(record.id, account.id)
            raise
        return record, device

    def list(self, account_id: str, current_session_id: Optional[str]) -> List[Dict[str, Any]]:
        return [
            _device_view(device, current_session_id)
            for device in self.store.list_session_devices(account_id)
        ]

    def touch(self, session_id: str) -> bool:
        """Stamp the device row of a session; False when the row is gone."""
        return self.store.touch_session_device(session_id, utcnow())

    async def end(self, session_id: str, account_id: Optional[str] = None) -> Optional[SessionDevice]:
        """Drop one session by id; unknown ids are ignored."""
        device = self.store.delete_session_device_by_session(session_id)
        await self.session_store.delete(session_id, account_id or (device.account_id if device else None))
        return device

    async def terminate(
        self,
        account: Account,
        device_id: str,
        current_session_id: Optional[str],
        context: Optional[ClientContext] = None,
    ) -> SessionDevice:
        device = self.store.get_session_device(device_id)
        if not device or device.account_id != account.id:
            raise NotFoundError("session not found")
        if current_session_id and device.session_id == current_session_id:
            raise ValidationError(
                "cannot terminate the current session; log out instead",
                detail={"field": "device_id"},
            )
        removed = self.store.delete_session_device(device.id)
        if removed is None:
            raise NotFoundError("session not found")
        await self.session_store.delete(removed.session_id, account.id)
        logger.info("session_terminated", account_id=account.id, device_id=removed.id)
        await self.audit.record(
            events.SESSION_TERMINATED,
            tenant_id=account.tenant_id,
            account_id=account.id,
            context=context,
            metadata={"device_id": removed.id, "device_name": removed.device_name},
        )
        return removed

    async def terminate_others(
        self,
        account: Account,
        current_session_id: Optional[str],
        context: Optional[ClientContext] = None,
    ) -> int:
        removed = self.store.delete_session_devices(
            account.id, except_session_id=current_session_id
        )
        await self.session_store.delete_many([d.session_id for d in removed], account.id)
        logger.info(
            "other_sessions_terminated", account_id=account.id, terminated_count=len(removed)
        )
        await self.audit.record(
            events.ALL_SESSIONS_TERMINATED,
            tenant_id=account.tenant_id,
            account_id=account.id,
            context=context,
            metadata={"terminated_count": len(removed)},
        )
        return len(removed)

    async def terminate_all(self, account_id: str) -> int:
        """Drop every session of an account without auditing; callers audit in bulk.

        The session-store sweep also reaches entries whose device row is
        already gone. Returns the number of device rows removed.
        """
        removed = self.store.delete_session_devices(account_id)
        await self.session_store.delete_many([d.session_id for d in removed], account_id)
        await self.session_store.delete_account_sessions(account_id)
        return len(removed)
