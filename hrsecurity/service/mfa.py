from __future__ import annotations

import base64
import io
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pyotp
import qrcode
from qrcode.image.svg import SvgPathImage

from hrsecurity.config import MfaPolicy
from hrsecurity.logging import get_logger
from hrsecurity.service import audit as events
from hrsecurity.service.audit import AuditLog
from hrsecurity.service.context import ClientContext
from hrsecurity.service.errors import (
    ForbiddenError,
    InvalidMfaCodeError,
    MfaAlreadyEnabledError,
    MfaNotEnabledError,
)
from hrsecurity.service.notifications import Notifier
from hrsecurity.service.passwords import PasswordVerifier
from hrsecurity.service.policy import SecurityPolicyService
from hrsecurity.storage.errors import ConstraintViolation
from hrsecurity.storage.models import Account, utcnow

logger = get_logger(__name__)

TOTP_CODE = re.compile(r"^\d{6}$")
BACKUP_CODE = re.compile(r"^[0-9A-Z]{8}$")

METHOD_TOTP = "totp"
METHOD_BACKUP_CODE = "backup_code"


def normalize_code(code: Optional[str]) -> str:
    """Strip whitespace and hyphens, upper-case: ``" abcd-1234 "`` -> ``"ABCD1234"``."""
    if not code:
        return ""
    return re.sub(r"[\s-]", "", code).upper()


def generate_backup_code() -> str:
    raw = secrets.token_bytes(4).hex().upper()
    return f"{raw[:4]}-{raw[4:]}"


def format_manual_code(secret: str) -> str:
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


class QrCodeRenderer:
    """Render provisioning URIs as inline SVG data URLs."""

    def __init__(self, *, box_size: int = 10, border: int = 4) -> None:
        self.box_size = box_size
        self.border = border

    def data_url(self, payload: str) -> str:
        image = qrcode.make(
            payload,
            image_factory=SvgPathImage,
            box_size=self.box_size,
            border=self.border,
        )
        buffer = io.BytesIO()
        image.save(buffer)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"


class MfaEngine:
    """TOTP enrolment state machine plus single-use backup codes.

    NotEnrolled -> PendingVerification (secret parked under its own session-store
    key for a few minutes, apart from the session record) -> Enrolled (secret
    persisted with a fresh batch of backup codes).
    Wrong codes never touch the login lockout counter.
    """

    def __init__(
        self,
        store,
        session_store,
        policies: SecurityPolicyService,
        audit: AuditLog,
        code_hasher: PasswordVerifier,
        *,
        issuer: str = "HeadOfficeOS",
        pending_minutes: int = 10,
        backup_code_count: int = 10,
        qr_renderer: Optional[QrCodeRenderer] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.store = store
        self.session_store = session_store
        self.policies = policies
        self.audit = audit
        self.code_hasher = code_hasher
        self.issuer = issuer
        self.pending_window = timedelta(minutes=pending_minutes)
        self.backup_code_count = backup_code_count
        self.qr_renderer = qr_renderer or QrCodeRenderer()
        self.notifier = notifier

    # -- primitives ---------------------------------------------------------

    @staticmethod
    def verify_totp(secret: Optional[str], code: Optional[str], for_time: Optional[datetime] = None) -> bool:
        """Accept the previous, current, and next 30-second step."""
        code = normalize_code(code)
        if not secret or not TOTP_CODE.match(code):
            return False
        return pyotp.TOTP(secret).verify(code, for_time=for_time or utcnow(), valid_window=1)

    def generate_backup_codes(self) -> List[str]:
        codes: set[str] = set()
        while len(codes) < self.backup_code_count:
            codes.add(generate_backup_code())
        return sorted(codes)

    def hash_backup_code(self, code: str) -> str:
        return self.code_hasher.hash(normalize_code(code))

    def _hash_batch(self, codes: List[str]) -> List[str]:
        return [self.hash_backup_code(code) for code in codes]

    def consume_backup_code(self, account: Account, code: str) -> bool:
        """Claim the first unused code matching ``code``; a lost claim race rejects."""
        normalized = normalize_code(code)
        if not BACKUP_CODE.match(normalized):
            return False
        for candidate in self.store.list_unused_backup_codes(account.id):
            if self.code_hasher.verify(normalized, candidate.code_hash):
                return self.store.claim_backup_code(candidate.id, utcnow())
        return False

    def verify_login_code(self, account: Account, code: Optional[str]) -> Optional[str]:
        """Check a login challenge response; returns the method used or None."""
        normalized = normalize_code(code)
        if TOTP_CODE.match(normalized):
            return METHOD_TOTP if self.verify_totp(account.mfa_secret, normalized) else None
        if BACKUP_CODE.match(normalized):
            return METHOD_BACKUP_CODE if self.consume_backup_code(account, normalized) else None
        return None

    def _require_totp(self, account: Account, code: Optional[str]) -> None:
        if not account.mfa_enabled:
            raise MfaNotEnabledError()
        if not self.verify_totp(account.mfa_secret, code):
            logger.info("mfa_code_rejected", account_id=account.id)
            raise InvalidMfaCodeError()

    # -- state machine ------------------------------------------------------

    async def enroll(self, account: Account, session_id: str) -> Dict[str, Any]:
        policy = self.policies.get(account.tenant_id)
        if policy.mfa_policy == MfaPolicy.OFF.value:
            raise ForbiddenError("MFA is disabled for this organisation")
        if account.mfa_enabled:
            raise MfaAlreadyEnabledError()

        secret = pyotp.random_base32()
        otpauth_uri = pyotp.TOTP(secret).provisioning_uri(
            name=account.email, issuer_name=self.issuer
        )
        await self.session_store.set_mfa_pending(
            session_id, secret, int(self.pending_window.total_seconds())
        )
        logger.info("mfa_enrollment_started", account_id=account.id)
        return {
            "secret": secret,
            "qr_code_url": self.qr_renderer.data_url(otpauth_uri),
            "otpauth_uri": otpauth_uri,
            "manual_code": format_manual_code(secret),
        }

    async def confirm_enrollment(
        self,
        account: Account,
        session_id: str,
        code: Optional[str],
        context: Optional[ClientContext] = None,
    ) -> List[str]:
        if account.mfa_enabled:
            raise MfaAlreadyEnabledError()
        now = utcnow()
        secret = await self.session_store.get_mfa_pending(session_id)
        if not secret or not self.verify_totp(secret, code, for_time=now):
            logger.info("mfa_enrollment_code_rejected", account_id=account.id, pending=bool(secret))
            raise InvalidMfaCodeError()

        codes = self.generate_backup_codes()
        try:
            self.store.enable_mfa(account.id, secret, now, self._hash_batch(codes))
        except ConstraintViolation as exc:
            raise MfaAlreadyEnabledError() from exc

        await self.session_store.clear_mfa_pending(session_id)
        logger.info("mfa_enabled", account_id=account.id)
        await self.audit.record(
            events.MFA_ENABLED,
            tenant_id=account.tenant_id,
            account_id=account.id,
            context=context,
        )
        return codes

    async def disable(
        self,
        account: Account,
        code: Optional[str],
        context: Optional[ClientContext] = None,
    ) -> None:
        self._require_totp(account, code)
        if not self.store.disable_mfa(account.id):
            raise MfaNotEnabledError()
        logger.info("mfa_disabled", account_id=account.id)
        await self.audit.record(
            events.MFA_DISABLED,
            tenant_id=account.tenant_id,
            account_id=account.id,
            context=context,
        )
        if self.notifier:
            try:
                await self.notifier.mfa_disabled(account)
            except Exception as exc:
                logger.warning(
                    "mfa_disabled_notification_failed",
                    account_id=account.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    async def regenerate_backup_codes(
        self,
        account: Account,
        code: Optional[str],
        context: Optional[ClientContext] = None,
    ) -> List[str]:
        self._require_totp(account, code)
        codes = self.generate_backup_codes()
        self.store.replace_backup_codes(account.id, self._hash_batch(codes))
        await self.audit.record(
            events.BACKUP_CODES_REGENERATED,
            tenant_id=account.tenant_id,
            account_id=account.id,
            context=context,
        )
        return codes

    def backup_codes_remaining(self, account: Account) -> int:
        if not account.mfa_enabled:
            return 0
        return self.store.count_unused_backup_codes(account.id)

    def status(self, account: Account) -> Dict[str, Any]:
        policy = self.policies.get(account.tenant_id)
        return {
            "mfa_enabled": account.mfa_enabled,
            "mfa_enabled_at": account.mfa_enabled_at,
            "backup_codes_remaining": self.backup_codes_remaining(account),
            "mfa_policy": policy.mfa_policy,
            "mfa_grace_period_days": policy.mfa_grace_period_days,
        }
