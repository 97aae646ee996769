import asyncio
import threading
from datetime import timedelta

import pytest

from hrsecurity.service import audit as events
from hrsecurity.service.errors import AccountLockedError, InvalidCredentialsError
from hrsecurity.storage.models import utcnow


def _events(runtime, event_type):
    found, _ = runtime.store.list_audit_events("acme", event_type=event_type, limit=100)
    return found


@pytest.mark.asyncio
async def test_failures_below_threshold_do_not_lock(runtime, make_account):
    account = make_account()
    for expected in range(1, 5):
        outcome = await runtime.lockout.record_failure(account)
        assert outcome.attempts == expected
        assert outcome.locked is False
        assert outcome.remaining_attempts == 5 - expected

    stored = runtime.store.get_account(account.id)
    assert stored.failed_login_attempts == 4
    assert stored.locked_until is None


@pytest.mark.asyncio
async def test_fifth_failure_locks_for_configured_window(runtime, make_account):
    account = make_account()
    for _ in range(4):
        await runtime.lockout.record_failure(account)

    before = utcnow()
    outcome = await runtime.lockout.record_failure(account)

    assert outcome.locked is True
    assert outcome.attempts == 5
    expected = before + timedelta(minutes=15)
    assert abs((outcome.locked_until - expected).total_seconds()) < 5
    assert runtime.lockout.check_locked(runtime.store.get_account(account.id))
    assert len(_events(runtime, events.ACCOUNT_LOCKED)) == 1


@pytest.mark.asyncio
async def test_further_failures_while_locked_do_not_relock(runtime, make_account):
    account = make_account()
    outcomes = [await runtime.lockout.record_failure(account) for _ in range(7)]

    assert [o.locked for o in outcomes].count(True) == 1
    assert outcomes[-1].locked_until == outcomes[4].locked_until
    assert len(_events(runtime, events.ACCOUNT_LOCKED)) == 1


@pytest.mark.asyncio
async def test_expired_lock_restarts_count(runtime, make_account):
    account = make_account()
    past = utcnow() - timedelta(minutes=1)
    runtime.store.record_failed_login(
        account.id, max_attempts=1, lock_until=past, now=past - timedelta(minutes=15)
    )

    outcome = await runtime.lockout.record_failure(account)

    assert outcome.attempts == 1
    assert outcome.locked is False
    assert outcome.locked_until is None


@pytest.mark.asyncio
async def test_success_resets_counter_and_lock(runtime, make_account):
    account = make_account()
    for _ in range(3):
        await runtime.lockout.record_failure(account)

    runtime.lockout.record_success(account)

    stored = runtime.store.get_account(account.id)
    assert stored.failed_login_attempts == 0
    assert stored.locked_until is None
    assert stored.last_login_at is not None


@pytest.mark.asyncio
async def test_unlock_clears_lock_and_audits(runtime, make_account):
    account = make_account()
    for _ in range(5):
        await runtime.lockout.record_failure(account)

    assert await runtime.lockout.unlock(account, actor_id="admin-1") is True
    assert await runtime.lockout.unlock(account, actor_id="admin-1") is False

    stored = runtime.store.get_account(account.id)
    assert not runtime.lockout.check_locked(stored)
    unlocked = _events(runtime, events.ACCOUNT_UNLOCKED)
    assert len(unlocked) == 1
    assert unlocked[0].metadata == {"unlocked_by": "admin-1"}


class _RecordingNotifier:
    def __init__(self, fail=False):
        self.locked = []
        self.fail = fail

    async def account_locked(self, account, locked_until):
        if self.fail:
            raise ConnectionError("smtp down")
        self.locked.append((account.id, locked_until))

    async def password_changed(self, account):
        return None

    async def mfa_disabled(self, account):
        return None


@pytest.mark.asyncio
async def test_lock_sends_notification_once(runtime, make_account):
    notifier = _RecordingNotifier()
    runtime.lockout.notifier = notifier
    account = make_account()

    for _ in range(6):
        await runtime.lockout.record_failure(account)

    assert len(notifier.locked) == 1
    assert notifier.locked[0][0] == account.id


@pytest.mark.asyncio
async def test_notifier_failure_does_not_break_lockout(runtime, make_account):
    runtime.lockout.notifier = _RecordingNotifier(fail=True)
    account = make_account()

    for _ in range(4):
        await runtime.lockout.record_failure(account)
    outcome = await runtime.lockout.record_failure(account)

    assert outcome.locked is True


@pytest.mark.asyncio
async def test_locked_account_rejects_correct_password(runtime, make_account, client_context):
    account = make_account()
    for _ in range(5):
        with pytest.raises((InvalidCredentialsError, AccountLockedError)):
            await runtime.auth.login(account.email, "wrong-Password1", client_context)

    with pytest.raises(AccountLockedError) as excinfo:
        await runtime.auth.login(account.email, "Correct-Horse7", client_context)

    assert excinfo.value.status_code == 423
    assert excinfo.value.detail["locked_until"] == excinfo.value.locked_until.isoformat()
    assert len(_events(runtime, events.LOGIN_FAILED_LOCKED)) == 1


def test_concurrent_failed_logins_lock_exactly_once(runtime, make_account, client_context):
    account = make_account()
    workers = 12
    barrier = threading.Barrier(workers)
    rejections = []
    results_lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            asyncio.run(runtime.auth.login(account.email, "Wrong-Horse7", client_context))
        except (InvalidCredentialsError, AccountLockedError) as exc:
            with results_lock:
                rejections.append(type(exc))

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(rejections) == workers
    assert AccountLockedError in rejections
    assert len(_events(runtime, events.ACCOUNT_LOCKED)) == 1
    assert runtime.lockout.check_locked(runtime.store.get_account(account.id))
    with pytest.raises(AccountLockedError):
        asyncio.run(runtime.auth.login(account.email, "Correct-Horse7", client_context))
