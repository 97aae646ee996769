from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from hrsecurity.config import MfaPolicy, Settings
from hrsecurity.logging import get_logger
from hrsecurity.service import audit as events
from hrsecurity.service.audit import AuditLog
from hrsecurity.service.context import AuthContext, ClientContext
from hrsecurity.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidMfaCodeError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from hrsecurity.service.lockout import LockoutGuard
from hrsecurity.service.mfa import METHOD_BACKUP_CODE, MfaEngine
from hrsecurity.service.notifications import Notifier
from hrsecurity.service.passwords import PasswordVerifier
from hrsecurity.service.permissions import Capability, has_capability
from hrsecurity.service.policy import SecurityPolicyPatch, SecurityPolicyService
from hrsecurity.service.sessions import SessionRegistry
from hrsecurity.storage.errors import ConstraintViolation
from hrsecurity.storage.models import (
    Account,
    SecurityAuditEvent,
    SessionDevice,
    SessionRecord,
    TenantSecurityPolicy,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)

INACTIVE = "inactive"


@dataclass
class AuthResult:
    """A completed login: the new session plus what the client needs to render."""

    account: Account
    session: SessionRecord
    device: SessionDevice
    policy: TenantSecurityPolicy
    mfa_enrollment_required: bool = False


@dataclass
class MfaRequired:
    """Password accepted; a second factor must be submitted before a session exists."""

    account_id: str
    challenge_expires_at: datetime


class AuthService:
    """Login orchestration plus the account security operations built on it."""

    def __init__(
        self,
        store,
        session_store,
        settings: Settings,
        *,
        passwords: PasswordVerifier,
        lockout: LockoutGuard,
        mfa: MfaEngine,
        sessions: SessionRegistry,
        policies: SecurityPolicyService,
        audit: AuditLog,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.store = store
        self.session_store = session_store
        self.settings = settings
        self.passwords = passwords
        self.lockout = lockout
        self.mfa = mfa
        self.sessions = sessions
        self.policies = policies
        self.audit = audit
        self.notifier = notifier
        self.challenge_window = timedelta(minutes=settings.mfa_challenge_minutes)
        self.logger = logger

    # -- login protocol -----------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        context: Optional[ClientContext] = None,
    ) -> Union[AuthResult, MfaRequired]:
        context = context or ClientContext()
        tenant_id = context.tenant_hint or self.settings.default_tenant_id
        account = self.store.get_account_by_email(tenant_id, email or "")
        if not account or not account.is_active:
            # Same argon2 cost as a real comparison so timing hides existence
            self.passwords.verify_dummy(password or "")
            self.logger.info("login_unknown_account", tenant_id=tenant_id)
            await self.audit.record(
                events.LOGIN_FAILED,
                tenant_id=tenant_id,
                account_id=account.id if account else None,
                context=context,
                metadata={"reason": "inactive_account" if account else "unknown_account"},
            )
            raise InvalidCredentialsError()

        if self.lockout.check_locked(account):
            self.logger.info("login_rejected_locked", account_id=account.id)
            await self.audit.record(
                events.LOGIN_FAILED_LOCKED,
                tenant_id=account.tenant_id,
                account_id=account.id,
                context=context,
            )
            raise AccountLockedError(as_utc(account.locked_until))

        if not self.passwords.verify(password or "", account.password_hash):
            outcome = await self.lockout.record_failure(account, context)
            self.logger.info(
                "login_bad_password",
                account_id=account.id,
                attempts=outcome.attempts,
                locked=outcome.locked,
            )
            await self.audit.record(
                events.LOGIN_FAILED,
                tenant_id=account.tenant_id,
                account_id=account.id,
                context=context,
                metadata={
                    "reason": "bad_password",
                    "attempts": outcome.attempts,
                    "remaining_attempts": outcome.remaining_attempts,
                },
            )
            if outcome.locked:
                raise AccountLockedError(outcome.locked_until)
            raise InvalidCredentialsError()

        self.lockout.record_success(account)
        self._maybe_rehash(account, password)

        if account.mfa_enabled:
            expires_at = utcnow() + self.challenge_window
            await self.session_store.set_mfa_challenge(
                account.id,
                {"tenant_id": account.tenant_id, "expires_at": expires_at.isoformat()},
                int(self.challenge_window.total_seconds()),
            )
            await self.audit.record(
                events.MFA_CHALLENGE_SENT,
                tenant_id=account.tenant_id,
                account_id=account.id,
                context=context,
            )
            return MfaRequired(account_id=account.id, challenge_expires_at=expires_at)

        return await self._complete_login(account, context, mfa_method=None)

    async def verify_login_mfa(
        self,
        account_id: str,
        code: Optional[str],
        context: Optional[ClientContext] = None,
    ) -> AuthResult:
        context = context or ClientContext()
        challenge = await self.session_store.get_mfa_challenge(account_id)
        if not challenge:
            raise InvalidMfaCodeError("no pending verification; sign in again")

        account = self.store.get_account(account_id)
        if (
            not account
            or not account.is_active
            or not account.mfa_enabled
            or account.tenant_id != challenge.get("tenant_id")
        ):
            await self.session_store.clear_mfa_challenge(account_id)
            raise InvalidMfaCodeError("no pending verification; sign in again")
        if self.lockout.check_locked(account):
            await self.session_store.clear_mfa_challenge(account_id)
            raise AccountLockedError(as_utc(account.locked_until))

        method = self.mfa.verify_login_code(account, code)
        if not method:
            # The challenge stays live and the lockout counter is not touched
            await self.audit.record(
                events.MFA_FAILED,
                tenant_id=account.tenant_id,
                account_id=account.id,
                context=context,
            )
            raise InvalidMfaCodeError()

        await self.session_store.clear_mfa_challenge(account_id)
        await self.audit.record(
            events.MFA_VERIFIED,
            tenant_id=account.tenant_id,
            account_id=account.id,
            context=context,
            metadata={"method": method},
        )
        if method == METHOD_BACKUP_CODE:
            await self.audit.record(
                events.BACKUP_CODE_USED,
                tenant_id=account.tenant_id,
                account_id=account.id,
                context=context,
                metadata={"remaining": self.store.count_unused_backup_codes(account.id)},
            )
        return await self._complete_login(account, context, mfa_method=method)

    async def _complete_login(
        self,
        account: Account,
        context: ClientContext,
        *,
        mfa_method: Optional[str],
    ) -> AuthResult:
        policy = self.policies.get(account.tenant_id)
        session, device = await self.sessions.create(
            account, policy.session_timeout_minutes, context
        )
        self.logger.info("login_success", account_id=account.id, device_id=device.id)
        await self.audit.record(
            events.LOGIN_SUCCESS,
            tenant_id=account.tenant_id,
            account_id=account.id,
            context=context,
            metadata={"device_id": device.id, "mfa_method": mfa_method},
        )
        account = self.store.get_account(account.id) or account
        return AuthResult(
            account=account,
            session=session,
            device=device,
            policy=policy,
            mfa_enrollment_required=(
                policy.mfa_policy == MfaPolicy.REQUIRED.value and not account.mfa_enabled
            ),
        )

    def _maybe_rehash(self, account: Account, password: str) -> None:
        if not self.passwords.needs_rehash(account.password_hash):
            return
        try:
            self.store.update_password_hash(account.id, self.passwords.hash(password))
            self.logger.info("password_rehashed", account_id=account.id)
        except Exception as exc:
            self.logger.warning(
                "password_rehash_failed",
                account_id=account.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def logout(self, session_id: Optional[str], context: Optional[ClientContext] = None) -> None:
        """End a session. Unknown or already-ended sessions are a no-op."""
        if not session_id:
            return
        record = await self.session_store.get(session_id)
        device = await self.sessions.end(session_id, record.account_id if record else None)
        owner = record or device
        if owner is None:
            return
        self.logger.info("logout", account_id=owner.account_id)
        await self.audit.record(
            events.LOGOUT,
            tenant_id=owner.tenant_id,
            account_id=owner.account_id,
            context=context,
        )

    async def authenticate(
        self,
        session_id: Optional[str],
        tenant_hint: Optional[str] = None,
        *,
        context: Optional[ClientContext] = None,
    ) -> AuthContext:
        """Resolve a session id to its caller and slide the session expiry."""
        if not session_id:
            raise AuthenticationError("session required")
        record = await self.session_store.get(session_id)
        now = utcnow()
        if not record or as_utc(record.expires_at) <= now:
            raise AuthenticationError("session expired or invalid")
        if tenant_hint and tenant_hint != record.tenant_id:
            self.logger.warning(
                "session_tenant_mismatch", account_id=record.account_id, tenant_hint=tenant_hint
            )
            raise AuthenticationError("session does not belong to this tenant")

        account = self.store.get_account(record.account_id)
        if not account or not account.is_active or account.tenant_id != record.tenant_id:
            await self.sessions.end(session_id, record.account_id)
            raise AuthenticationError("session expired or invalid")
        if not self.sessions.touch(session_id):
            # A revocation removed the device row but the session entry survived
            self.logger.warning("session_without_device_rejected", account_id=record.account_id)
            await self.sessions.end(session_id, record.account_id)
            raise AuthenticationError("session expired or invalid")

        policy = self.policies.get(record.tenant_id)
        record.expires_at = now + timedelta(minutes=policy.session_timeout_minutes)
        record.role = account.role
        await self.session_store.save(record)
        return AuthContext(
            account_id=account.id,
            tenant_id=account.tenant_id,
            role=account.role,
            session_id=record.id,
            csrf_token=record.csrf_token,
            session_expires_at=record.expires_at,
            client=context or ClientContext(),
        )

    def authorize(self, ctx: AuthContext, capability: Capability) -> None:
        if not has_capability(ctx.roles, capability):
            self.logger.info(
                "authorization_denied", account_id=ctx.account_id, capability=capability.value
            )
            raise ForbiddenError("insufficient permissions")

    def current_account(self, ctx: AuthContext) -> Account:
        account = self.store.get_account(ctx.account_id)
        if not account or account.tenant_id != ctx.tenant_id:
            raise AuthenticationError("session expired or invalid")
        return account

    async def _notify(self, action: str, account: Account, *args: Any) -> None:
        if not self.notifier:
            return
        try:
            await getattr(self.notifier, action)(account, *args)
        except Exception as exc:
            self.logger.warning(
                "security_notification_failed",
                action=action,
                account_id=account.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # -- self-service -------------------------------------------------------

    async def change_password(self, ctx: AuthContext, current: str, new: str) -> None:
        account = self.current_account(ctx)
        if not self.passwords.verify(current or "", account.password_hash):
            self.logger.info("password_change_rejected", account_id=account.id)
            await self.audit.record(
                events.PASSWORD_CHANGE_FAILED,
                tenant_id=account.tenant_id,
                account_id=account.id,
                context=ctx.client,
                metadata={"reason": "current_password_mismatch"},
            )
            raise ValidationError(
                "current password is incorrect", detail={"field": "current_password"}
            )

        policy = self.policies.get(account.tenant_id)
        violations = self.passwords.validate_against_policy(new or "", policy)
        if violations:
            raise PolicyViolationError(
                "password does not meet requirements",
                violations=violations,
                field="new_password",
            )

        self.store.update_password_hash(account.id, self.passwords.hash(new))
        self.logger.info("password_changed", account_id=account.id)
        await self.audit.record(
            events.PASSWORD_CHANGED,
            tenant_id=account.tenant_id,
            account_id=account.id,
            context=ctx.client,
        )
        await self._notify("password_changed", account)

    def password_requirements(self, ctx: AuthContext) -> Dict[str, Any]:
        return self.policies.password_requirements(ctx.tenant_id)

    def mfa_status(self, ctx: AuthContext) -> Dict[str, Any]:
        return self.mfa.status(self.current_account(ctx))

    def backup_codes_remaining(self, ctx: AuthContext) -> int:
        return self.mfa.backup_codes_remaining(self.current_account(ctx))

    async def enroll_mfa(self, ctx: AuthContext) -> Dict[str, Any]:
        account = self.current_account(ctx)
        return await self.mfa.enroll(account, ctx.session_id)

    async def confirm_mfa_enrollment(self, ctx: AuthContext, code: Optional[str]) -> List[str]:
        account = self.current_account(ctx)
        return await self.mfa.confirm_enrollment(account, ctx.session_id, code, ctx.client)

    async def disable_mfa(self, ctx: AuthContext, code: Optional[str]) -> None:
        await self.mfa.disable(self.current_account(ctx), code, ctx.client)

    async def regenerate_backup_codes(self, ctx: AuthContext, code: Optional[str]) -> List[str]:
        return await self.mfa.regenerate_backup_codes(self.current_account(ctx), code, ctx.client)

    def list_sessions(self, ctx: AuthContext) -> List[Dict[str, Any]]:
        return self.sessions.list(ctx.account_id, ctx.session_id)

    async def terminate_session(self, ctx: AuthContext, device_id: str) -> SessionDevice:
        return await self.sessions.terminate(
            self.current_account(ctx), device_id, ctx.session_id, ctx.client
        )

    async def terminate_other_sessions(self, ctx: AuthContext) -> int:
        return await self.sessions.terminate_others(
            self.current_account(ctx), ctx.session_id, ctx.client
        )

    # -- administration -----------------------------------------------------

    def get_security_policy(self, ctx: AuthContext) -> TenantSecurityPolicy:
        self.authorize(ctx, Capability.MANAGE_SECURITY_POLICY)
        return self.policies.get(ctx.tenant_id)

    async def update_security_policy(
        self,
        ctx: AuthContext,
        patch: Union[SecurityPolicyPatch, Mapping[str, Any]],
    ) -> TenantSecurityPolicy:
        self.authorize(ctx, Capability.MANAGE_SECURITY_POLICY)
        return await self.policies.update(
            ctx.tenant_id, patch, actor_id=ctx.account_id, context=ctx.client
        )

    def list_audit_events(
        self,
        ctx: AuthContext,
        *,
        event_type: Optional[str] = None,
        account_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> tuple[List[SecurityAuditEvent], int]:
        self.authorize(ctx, Capability.VIEW_SECURITY_AUDIT)
        return self.audit.list_events(
            ctx.tenant_id,
            event_type=event_type,
            account_id=account_id,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )

    def verify_audit_chain(self, ctx: AuthContext) -> Dict[str, Any]:
        self.authorize(ctx, Capability.VIEW_SECURITY_AUDIT)
        return self.audit.verify_chain(ctx.tenant_id)

    def mfa_stats(self, ctx: AuthContext) -> Dict[str, int]:
        self.authorize(ctx, Capability.VIEW_SECURITY_REPORTS)
        stats = self.store.mfa_stats(ctx.tenant_id)
        total, enabled = stats["total_users"], stats["mfa_enabled_count"]
        percentage = math.floor(enabled * 100 / total + 0.5) if total else 0
        return {"total_users": total, "mfa_enabled_count": enabled, "percentage": percentage}

    def inactive_accounts(self, ctx: AuthContext, days: Optional[int] = None) -> List[Account]:
        self.authorize(ctx, Capability.VIEW_SECURITY_REPORTS)
        days = self.settings.inactive_account_days if days is None else days
        if days < 1:
            raise ValidationError("days must be positive", detail={"field": "days"})
        return self.store.list_inactive_accounts(ctx.tenant_id, utcnow() - timedelta(days=days))

    async def bulk_disable(self, ctx: AuthContext, account_ids: Sequence[str]) -> List[str]:
        self.authorize(ctx, Capability.MANAGE_ACCOUNTS)
        account_ids = [account_id for account_id in dict.fromkeys(account_ids or []) if account_id]
        if not account_ids:
            raise ValidationError("account_ids must not be empty", detail={"field": "account_ids"})
        if ctx.account_id in account_ids:
            raise ValidationError(
                "cannot disable your own account", detail={"field": "account_ids"}
            )

        disabled = self.store.set_employment_status(ctx.tenant_id, account_ids, INACTIVE)
        for account_id in disabled:
            await self.sessions.terminate_all(account_id)
        self.logger.info("bulk_accounts_disabled", actor_id=ctx.account_id, count=len(disabled))
        await self.audit.record(
            events.BULK_ACCOUNTS_DISABLED,
            tenant_id=ctx.tenant_id,
            account_id=ctx.account_id,
            context=ctx.client,
            metadata={"disabled_ids": disabled, "count": len(disabled)},
        )
        return disabled

    async def unlock_account(self, ctx: AuthContext, account_id: str) -> bool:
        self.authorize(ctx, Capability.MANAGE_ACCOUNTS)
        account = self.store.get_account(account_id)
        if not account or account.tenant_id != ctx.tenant_id:
            raise NotFoundError("account not found")
        return await self.lockout.unlock(account, actor_id=ctx.account_id, context=ctx.client)

    async def provision_account(
        self,
        tenant_id: str,
        email: str,
        password: str,
        *,
        role: str = "employee",
        full_name: Optional[str] = None,
    ) -> Account:
        """Create an account directly; used by the bootstrap script."""
        policy = self.policies.get(tenant_id)
        violations = self.passwords.validate_against_policy(password, policy)
        if violations:
            raise PolicyViolationError(
                "password does not meet requirements",
                violations=violations,
                field="password",
            )
        try:
            account = self.store.create_account(
                tenant_id,
                email,
                self.passwords.hash(password),
                role=role,
                full_name=full_name,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already exists", detail={"field": "email"}) from exc
        self.logger.info("account_provisioned", account_id=account.id, tenant_id=tenant_id, role=role)
        await self.audit.record(
            events.ACCOUNT_PROVISIONED,
            tenant_id=tenant_id,
            account_id=account.id,
            metadata={"role": role},
        )
        return account
