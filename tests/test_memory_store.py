import json
import time
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from hrsecurity.storage.errors import ConstraintViolation, StoreUnavailable
from hrsecurity.storage.memory import MemoryStore
from hrsecurity.storage.models import (
    Account,
    SecurityAuditEvent,
    SessionRecord,
    TenantSecurityPolicy,
    utcnow,
)
from hrsecurity.storage.redis_cache import MemorySessionStore, RedisSessionStore

KEY = "unit-test-mfa-key"


def _store(tmp_path, persist=True):
    return MemoryStore(str(tmp_path), mfa_encryption_key=KEY, persist=persist)


def test_email_unique_per_tenant_case_insensitive(tmp_path):
    store = _store(tmp_path, persist=False)
    store.create_account("acme", "Jane@Acme.test", "hash")

    with pytest.raises(ConstraintViolation):
        store.create_account("acme", "jane@acme.test", "hash")
    # Same address in another tenant is a different account
    other = store.create_account("globex", "jane@acme.test", "hash")

    assert store.get_account_by_email("globex", "JANE@acme.test").id == other.id


def test_returned_accounts_are_copies(tmp_path):
    store = _store(tmp_path, persist=False)
    account = store.create_account("acme", "jane@acme.test", "hash")

    account.role = "admin"

    assert store.get_account(account.id).role == "employee"


def test_snapshot_round_trip_encrypts_mfa_secret(tmp_path):
    store = _store(tmp_path)
    account = store.create_account("acme", "jane@acme.test", "hash", role="hr")
    store.enable_mfa(account.id, "JBSWY3DPEHPK3PXP", utcnow(), ["h1", "h2"])
    store.save_tenant_policy(TenantSecurityPolicy(tenant_id="acme", password_min_length=12))
    store.append_audit_event(SecurityAuditEvent(tenant_id="acme", event_type="mfa_enabled"))

    raw = (tmp_path / "state" / "security_store.json").read_text()
    assert "JBSWY3DPEHPK3PXP" not in raw
    assert json.loads(raw)["accounts"][0]["mfa_secret"]

    reloaded = _store(tmp_path)
    restored = reloaded.get_account(account.id)
    assert isinstance(restored, Account)
    assert restored.mfa_secret == "JBSWY3DPEHPK3PXP"
    assert restored.mfa_enabled_at.tzinfo is not None
    assert reloaded.count_unused_backup_codes(account.id) == 2
    assert reloaded.get_tenant_policy("acme").password_min_length == 12

    # Audit ids continue after a reload and the chain stays intact
    event = reloaded.append_audit_event(SecurityAuditEvent(tenant_id="acme", event_type="logout"))
    assert event.id == 2
    assert event.prev_hash == reloaded.list_audit_chain("acme")[0].entry_hash


def test_enable_mfa_twice_is_rejected(tmp_path):
    store = _store(tmp_path, persist=False)
    account = store.create_account("acme", "jane@acme.test", "hash")
    store.enable_mfa(account.id, "SECRET", utcnow(), ["h1"])

    with pytest.raises(ConstraintViolation):
        store.enable_mfa(account.id, "OTHER", utcnow(), ["h2"])
    assert store.get_account(account.id).mfa_secret == "SECRET"


def test_claim_backup_code_only_once(tmp_path):
    store = _store(tmp_path, persist=False)
    account = store.create_account("acme", "jane@acme.test", "hash")
    code = store.enable_mfa(account.id, "SECRET", utcnow(), ["h1"])[0]

    assert store.claim_backup_code(code.id, utcnow()) is True
    assert store.claim_backup_code(code.id, utcnow()) is False
    assert store.list_unused_backup_codes(account.id) == []


def test_inactive_accounts_ordered_oldest_first(tmp_path):
    store = _store(tmp_path, persist=False)
    now = utcnow()
    recent = store.create_account("acme", "recent@acme.test", "hash")
    stale = store.create_account("acme", "stale@acme.test", "hash")
    never = store.create_account("acme", "never@acme.test", "hash")
    store.record_successful_login(recent.id, now)
    store.record_successful_login(stale.id, now - timedelta(days=200))
    store.accounts[never.id].created_at = now - timedelta(days=100)

    inactive = store.list_inactive_accounts("acme", now - timedelta(days=90))

    assert [a.email for a in inactive] == ["stale@acme.test", "never@acme.test"]


@pytest.mark.asyncio
async def test_memory_session_store_expiry_and_challenges():
    sessions = MemorySessionStore()
    account = Account(id="a1", tenant_id="acme", email="jane@acme.test", password_hash="h")
    live = SessionRecord.new(account, 30)
    expired = SessionRecord.new(account, 30)
    expired.expires_at = utcnow() - timedelta(seconds=1)
    await sessions.save(live)
    await sessions.save(expired)

    assert (await sessions.get(live.id)).csrf_token == live.csrf_token
    assert await sessions.get(expired.id) is None
    assert await sessions.delete_many([live.id, "missing"]) == 1

    await sessions.set_mfa_challenge("a1", {"tenant_id": "acme"}, 60)
    assert await sessions.get_mfa_challenge("a1") == {"tenant_id": "acme"}
    await sessions.clear_mfa_challenge("a1")
    assert await sessions.get_mfa_challenge("a1") is None


class _FailingRedis:
    async def get(self, key):
        raise RedisConnectionError("Error 111 connecting to redis://:hunter2@cache:6379")


class _CorruptRedis:
    async def get(self, key):
        return "{not json"


@pytest.mark.asyncio
async def test_redis_session_store_maps_errors():
    store = RedisSessionStore("redis://localhost:6379/15")
    store.client = _FailingRedis()

    with pytest.raises(StoreUnavailable) as excinfo:
        await store.get("abc")
    assert excinfo.value.backend == "redis"

    store.client = _CorruptRedis()
    assert await store.get("abcdefghijk") is None


@pytest.mark.asyncio
async def test_memory_session_store_pending_secret_is_separate_and_expires():
    sessions = MemorySessionStore()
    account = Account(id="a1", tenant_id="acme", email="jane@acme.test", password_hash="h")
    record = SessionRecord.new(account, 30)
    await sessions.save(record)

    await sessions.set_mfa_pending(record.id, "JBSWY3DPEHPK3PXP", 600)
    # Re-saving the session record leaves the pending secret alone
    await sessions.save(record)
    assert await sessions.get_mfa_pending(record.id) == "JBSWY3DPEHPK3PXP"

    sessions._pending[record.id] = (time.monotonic() - 1, "JBSWY3DPEHPK3PXP")
    assert await sessions.get_mfa_pending(record.id) is None

    await sessions.set_mfa_pending(record.id, "JBSWY3DPEHPK3PXP", 600)
    await sessions.delete(record.id)
    assert await sessions.get_mfa_pending(record.id) is None


class _Pipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def delete(self, key):
        self.ops.append(("delete", key))

    def srem(self, key, *members):
        self.ops.append(("srem", key, members))

    async def execute(self):
        results = []
        for op in self.ops:
            if op[0] == "delete":
                results.append(1 if self.client.data.pop(op[1], None) is not None else 0)
            else:
                members = self.client.sets.get(op[1], set())
                results.append(len(members & set(op[2])))
                members.difference_update(op[2])
        return results


class _IndexedRedis:
    def __init__(self):
        self.data = {}
        self.sets = {}

    def pipeline(self):
        return _Pipeline(self)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def delete(self, key):
        self.sets.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0


@pytest.mark.asyncio
async def test_redis_delete_account_sessions_reads_the_account_index():
    store = RedisSessionStore("redis://localhost:6379/15")
    fake = _IndexedRedis()
    store.client = fake
    fake.data = {
        "auth:session:s1": "{}",
        "auth:session:s2": "{}",
        "auth:mfa_pending:s2": "SECRET",
        "auth:session:s3": "{}",
    }
    fake.sets = {"auth:account_sessions:a1": {"s1", "s2"}, "auth:account_sessions:a2": {"s3"}}

    assert await store.delete_account_sessions("a1") == 2

    assert set(fake.data) == {"auth:session:s3"}
    assert "auth:account_sessions:a1" not in fake.sets
    assert fake.sets["auth:account_sessions:a2"] == {"s3"}
