from __future__ import annotations

import secrets
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


ACTIVE = "active"


@dataclass
class Account:
    id: str
    tenant_id: str
    email: str
    password_hash: str
    role: str = "employee"
    full_name: Optional[str] = None
    employment_status: str = ACTIVE
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    mfa_enabled: bool = False
    # Plaintext base32 secret; stores encrypt it at rest
    mfa_secret: Optional[str] = None
    mfa_enabled_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.employment_status == ACTIVE

    def is_locked(self, now: datetime) -> bool:
        locked_until = as_utc(self.locked_until)
        return locked_until is not None and locked_until > now


@dataclass
class BackupCode:
    id: str
    account_id: str
    tenant_id: str
    code_hash: str
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionDevice:
    id: str
    tenant_id: str
    account_id: str
    session_id: str
    device_name: str
    ip_address: Optional[str] = None
    last_active: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TenantSecurityPolicy:
    tenant_id: str
    mfa_policy: str = "optional"
    mfa_grace_period_days: int = 7
    password_min_length: int = 8
    password_require_uppercase: bool = True
    password_require_number: bool = True
    password_require_special: bool = False
    session_timeout_minutes: int = 480
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SecurityAuditEvent:
    tenant_id: str
    event_type: str
    account_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    # Assigned by the store when the event is appended
    id: Optional[int] = None
    prev_hash: Optional[str] = None
    entry_hash: Optional[str] = None


@dataclass
class LockoutOutcome:
    attempts: int
    max_attempts: int
    locked_until: Optional[datetime] = None
    # True only for the update that moved the account into the locked state
    locked: bool = False

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.attempts)


@dataclass
class SessionRecord:
    """Authentication session payload held in the session store."""

    id: str
    account_id: str
    tenant_id: str
    role: str
    created_at: datetime
    expires_at: datetime
    csrf_token: str
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        account: Account,
        ttl_minutes: int,
        *,
        meta: Optional[Dict[str, Any]] = None,
    ) -> "SessionRecord":
        now = utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            account_id=account.id,
            tenant_id=account.tenant_id,
            role=account.role,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            csrf_token=secrets.token_urlsafe(24),
            meta=meta or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "tenant_id": self.tenant_id,
            "role": self.role,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "csrf_token": self.csrf_token,
            "meta": self.meta,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            tenant_id=data["tenant_id"],
            role=data.get("role", "employee"),
            created_at=as_utc(datetime.fromisoformat(data["created_at"])),
            expires_at=as_utc(datetime.fromisoformat(data["expires_at"])),
            csrf_token=data.get("csrf_token", ""),
            meta=data.get("meta") or {},
        )


def new_id() -> str:
    return str(uuid.uuid4())
