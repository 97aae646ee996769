from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hrsecurity.storage.models import Account, SecurityAuditEvent, TenantSecurityPolicy


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "invalid_mfa_code",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "mfa_not_enabled",
    "mfa_already_enabled",
    "policy_violation",
    "account_locked",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MfaLoginRequest(BaseModel):
    account_id: str = Field(..., max_length=64)
    code: str = Field(..., max_length=16)


class MfaCodeRequest(BaseModel):
    code: str = Field(..., max_length=16)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)


class BulkDisableRequest(BaseModel):
    account_ids: List[str] = Field(..., max_length=1000)


class AccountResponse(BaseModel):
    id: str
    tenant_id: str
    email: str
    role: str
    full_name: Optional[str] = None
    mfa_enabled: bool = False
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            tenant_id=account.tenant_id,
            email=account.email,
            role=account.role,
            full_name=account.full_name,
            mfa_enabled=account.mfa_enabled,
            last_login_at=account.last_login_at,
        )


class SecurityPolicyResponse(BaseModel):
    tenant_id: str
    mfa_policy: str
    mfa_grace_period_days: int
    password_min_length: int
    password_require_uppercase: bool
    password_require_number: bool
    password_require_special: bool
    session_timeout_minutes: int
    updated_at: Optional[datetime] = None

    @classmethod
    def from_policy(cls, policy: TenantSecurityPolicy) -> "SecurityPolicyResponse":
        return cls(**policy.to_dict())


class AuthResponse(BaseModel):
    account: AccountResponse
    session_id: str
    session_expires_at: datetime
    csrf_token: str
    mfa_required: bool = False
    mfa_enrollment_required: bool = False
    security_policy: SecurityPolicyResponse


class MfaChallengeResponse(BaseModel):
    mfa_required: bool = True
    account_id: str
    challenge_expires_at: datetime


class MfaEnrollResponse(BaseModel):
    secret: str
    qr_code_url: str
    otpauth_uri: str
    manual_code: str


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
    message: str = "Save these backup codes somewhere safe. They will not be shown again."


class MfaStatusResponse(BaseModel):
    mfa_enabled: bool
    mfa_enabled_at: Optional[datetime] = None
    backup_codes_remaining: int
    mfa_policy: str
    mfa_grace_period_days: int


class SessionDeviceResponse(BaseModel):
    id: str
    device_name: str
    ip_address: Optional[str] = None
    last_active: datetime
    created_at: datetime
    is_current: bool = False


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    tenant_id: str
    account_id: Optional[str] = None
    event_type: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    entry_hash: Optional[str] = None

    @classmethod
    def from_event(cls, event: SecurityAuditEvent) -> "AuditEventResponse":
        return cls.model_validate(event)


class AuditListResponse(BaseModel):
    events: List[AuditEventResponse]
    total: int
    limit: int
    offset: int


class InactiveAccountResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: str
    last_login_at: Optional[datetime] = None
    employment_status: str
