from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from hrsecurity.logging import get_logger
from hrsecurity.service.context import ClientContext
from hrsecurity.service.errors import ValidationError
from hrsecurity.storage.common import GENESIS_HASH, audit_entry_digest
from hrsecurity.storage.models import SecurityAuditEvent, as_utc

logger = get_logger(__name__)

LOGIN_SUCCESS = "login_success"
LOGIN_FAILED = "login_failed"
LOGIN_FAILED_LOCKED = "login_failed_locked"
ACCOUNT_LOCKED = "account_locked"
ACCOUNT_UNLOCKED = "account_unlocked"
ACCOUNT_PROVISIONED = "account_provisioned"
LOGOUT = "logout"
MFA_CHALLENGE_SENT = "mfa_challenge_sent"
MFA_VERIFIED = "mfa_verified"
MFA_FAILED = "mfa_failed"
MFA_ENABLED = "mfa_enabled"
MFA_DISABLED = "mfa_disabled"
BACKUP_CODE_USED = "backup_code_used"
BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
PASSWORD_CHANGED = "password_changed"
PASSWORD_CHANGE_FAILED = "password_change_failed"
SESSION_TERMINATED = "session_terminated"
ALL_SESSIONS_TERMINATED = "all_sessions_terminated"
SECURITY_POLICY_UPDATED = "security_policy_updated"
BULK_ACCOUNTS_DISABLED = "bulk_accounts_disabled"


class AuditLog:
    """Append-only security event trail.

    Writes are best-effort: a failing store is logged and never aborts the
    operation being audited. Reads surface store errors to the caller.
    """

    def __init__(self, store, *, default_limit: int = 50, max_limit: int = 200) -> None:
        self.store = store
        self.default_limit = default_limit
        self.max_limit = max_limit

    async def record(
        self,
        event_type: str,
        *,
        tenant_id: str,
        account_id: Optional[str] = None,
        context: Optional[ClientContext] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityAuditEvent]:
        context = context or ClientContext()
        event = SecurityAuditEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            account_id=account_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata=dict(metadata or {}),
        )
        try:
            return self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "security_audit_write_failed",
                event_type=event_type,
                tenant_id=tenant_id,
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def list_events(
        self,
        tenant_id: str,
        *,
        event_type: Optional[str] = None,
        account_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[SecurityAuditEvent], int]:
        if limit is None:
            limit = self.default_limit
        if limit < 1:
            raise ValidationError("limit must be positive", detail={"field": "limit"})
        if offset < 0:
            raise ValidationError("offset must not be negative", detail={"field": "offset"})
        since, until = as_utc(since), as_utc(until)
        if since and until and since > until:
            raise ValidationError("since must not be after until", detail={"field": "since"})
        return self.store.list_audit_events(
            tenant_id,
            event_type=event_type,
            account_id=account_id,
            since=since,
            until=until,
            limit=min(limit, self.max_limit),
            offset=offset,
        )

    def verify_chain(self, tenant_id: str) -> Dict[str, Any]:
        """Recompute every hash in the tenant's trail, oldest first."""
        events = self.store.list_audit_chain(tenant_id)
        expected_prev = GENESIS_HASH
        for checked, event in enumerate(events):
            if event.prev_hash != expected_prev or event.entry_hash != audit_entry_digest(
                event, event.prev_hash
            ):
                logger.warning(
                    "security_audit_chain_broken", tenant_id=tenant_id, event_id=event.id
                )
                return {"valid": False, "checked": checked, "first_broken_event_id": event.id}
            expected_prev = event.entry_hash
        return {"valid": True, "checked": len(events), "first_broken_event_id": None}
