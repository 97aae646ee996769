from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from hrsecurity.logging import get_logger
from hrsecurity.service import audit as events
from hrsecurity.service.audit import AuditLog
from hrsecurity.service.context import ClientContext
from hrsecurity.service.notifications import Notifier
from hrsecurity.storage.models import Account, LockoutOutcome, utcnow

logger = get_logger(__name__)


class LockoutGuard:
    """Failed-login counter with a timed lock.

    Counters live on the account row and only change through single atomic
    store calls, so concurrent failures can never skip past the threshold.
    """

    def __init__(
        self,
        store,
        audit: AuditLog,
        notifier: Optional[Notifier] = None,
        *,
        max_attempts: int = 5,
        lockout_minutes: int = 15,
    ) -> None:
        self.store = store
        self.audit = audit
        self.notifier = notifier
        self.max_attempts = max_attempts
        self.lockout_duration = timedelta(minutes=lockout_minutes)

    def check_locked(self, account: Account, now: Optional[datetime] = None) -> bool:
        return account.is_locked(now or utcnow())

    async def record_failure(
        self, account: Account, context: Optional[ClientContext] = None
    ) -> LockoutOutcome:
        now = utcnow()
        outcome = self.store.record_failed_login(
            account.id,
            max_attempts=self.max_attempts,
            lock_until=now + self.lockout_duration,
            now=now,
        )
        if outcome is None:
            # Account vanished between lookup and update
            return LockoutOutcome(attempts=0, max_attempts=self.max_attempts)
        if outcome.locked:
            logger.warning(
                "account_locked",
                account_id=account.id,
                tenant_id=account.tenant_id,
                attempts=outcome.attempts,
                locked_until=outcome.locked_until.isoformat(),
            )
            await self.audit.record(
                events.ACCOUNT_LOCKED,
                tenant_id=account.tenant_id,
                account_id=account.id,
                context=context,
                metadata={
                    "attempts": outcome.attempts,
                    "locked_until": outcome.locked_until.isoformat(),
                },
            )
            await self._notify_locked(account, outcome.locked_until)
        return outcome

    async def _notify_locked(self, account: Account, locked_until: datetime) -> None:
        if not self.notifier:
            return
        try:
            await self.notifier.account_locked(account, locked_until)
        except Exception as exc:
            logger.warning(
                "lockout_notification_failed",
                account_id=account.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def record_success(self, account: Account) -> None:
        self.store.record_successful_login(account.id, utcnow())

    async def unlock(
        self,
        account: Account,
        *,
        actor_id: Optional[str] = None,
        context: Optional[ClientContext] = None,
    ) -> bool:
        cleared = self.store.clear_lockout(account.id)
        if cleared:
            logger.info("account_unlocked", account_id=account.id, actor_id=actor_id)
            await self.audit.record(
                events.ACCOUNT_UNLOCKED,
                tenant_id=account.tenant_id,
                account_id=account.id,
                context=context,
                metadata={"unlocked_by": actor_id},
            )
        return cleared
