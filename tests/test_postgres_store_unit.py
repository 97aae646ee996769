import contextlib
import uuid
from datetime import timedelta

import psycopg
import pytest

from hrsecurity.logging import get_logger
from hrsecurity.storage.common import GENESIS_HASH, MfaSecretCipher
from hrsecurity.storage.errors import ConstraintViolation, StoreUnavailable
from hrsecurity.storage.models import SecurityAuditEvent, utcnow
from hrsecurity.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def executemany(self, sql, rows):
        self.conn.executed.append((" ".join(sql.split()), list(rows)))


class FakeConnection:
    """Records every statement and answers from a queue of canned row lists."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.executed = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return FakeResult(self.responses.pop(0) if self.responses else [])

    def cursor(self):
        return FakeCursor(self)

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


class DownPool:
    @contextlib.contextmanager
    def connection(self):
        raise psycopg.OperationalError("connection refused for user=hr password=hunter2")
        yield  # pragma: no cover


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.dsn = "postgresql://unit-test"
    store._cipher = MfaSecretCipher("unit-test-key")
    store.logger = get_logger("test")
    return store


def test_record_failure_reports_lock_only_for_own_timestamp():
    now = utcnow()
    lock_until = now + timedelta(minutes=15)
    conn = FakeConnection(
        [
            [{"failed_login_attempts": 5, "locked_until": lock_until}],
            [{"failed_login_attempts": 6, "locked_until": lock_until - timedelta(seconds=3)}],
        ]
    )
    store = _store(conn)

    first = store.record_failed_login("id-1", max_attempts=5, lock_until=lock_until, now=now)
    second = store.record_failed_login("id-1", max_attempts=5, lock_until=lock_until, now=now)

    assert first.locked is True and first.attempts == 5
    assert second.locked is False and second.attempts == 6
    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE account SET failed_login_attempts = CASE")
    assert "RETURNING failed_login_attempts, locked_until" in sql
    assert params["max_attempts"] == 5


def test_record_failure_for_missing_account_returns_none():
    store = _store(FakeConnection([[]]))

    assert store.record_failed_login(
        "gone", max_attempts=5, lock_until=utcnow(), now=utcnow()
    ) is None


def test_claim_backup_code_is_conditional_update():
    conn = FakeConnection([[{"id": "code-1"}], []])
    store = _store(conn)

    assert store.claim_backup_code("code-1", utcnow()) is True
    assert store.claim_backup_code("code-1", utcnow()) is False
    assert "WHERE id = %s AND used_at IS NULL" in conn.executed[0][0]


def test_enable_mfa_encrypts_secret_and_inserts_codes_in_one_transaction():
    conn = FakeConnection([[{"tenant_id": "acme"}]])
    store = _store(conn)

    codes = store.enable_mfa("acct-1", "JBSWY3DPEHPK3PXP", utcnow(), ["h1", "h2"])

    assert conn.transactions == 1
    assert [c.code_hash for c in codes] == ["h1", "h2"]
    update_sql, update_params = conn.executed[0]
    assert "WHERE id = %s AND mfa_enabled = FALSE" in update_sql
    assert update_params[0] != "JBSWY3DPEHPK3PXP"
    assert store._cipher.decrypt(update_params[0]) == "JBSWY3DPEHPK3PXP"
    assert conn.executed[1][0].startswith("DELETE FROM backup_code")
    insert_sql, rows = conn.executed[2]
    assert insert_sql.startswith("INSERT INTO backup_code")
    assert len(rows) == 2


def test_enable_mfa_twice_is_a_constraint_violation():
    store = _store(FakeConnection([[]]))

    with pytest.raises(ConstraintViolation):
        store.enable_mfa("acct-1", "JBSWY3DPEHPK3PXP", utcnow(), ["h1"])


def test_append_audit_event_locks_tenant_and_chains():
    conn = FakeConnection([[], [{"entry_hash": "a" * 64}], [{"id": 42}]])
    store = _store(conn)

    event = store.append_audit_event(SecurityAuditEvent(tenant_id="acme", event_type="logout"))

    assert event.id == 42
    assert event.prev_hash == "a" * 64
    assert len(event.entry_hash) == 64
    assert "pg_advisory_xact_lock" in conn.executed[0][0]
    assert conn.executed[0][1] == ("acme",)


def test_first_audit_event_chains_to_genesis():
    conn = FakeConnection([[], [], [{"id": 1}]])
    store = _store(conn)

    event = store.append_audit_event(SecurityAuditEvent(tenant_id="acme", event_type="logout"))

    assert event.prev_hash == GENESIS_HASH


def test_list_audit_events_builds_filters():
    conn = FakeConnection([[], [{"total": 0}]])
    store = _store(conn)
    account_id = str(uuid.uuid4())
    since = utcnow() - timedelta(days=1)

    events, total = store.list_audit_events(
        "acme", event_type="login_failed", account_id=account_id, since=since, limit=10, offset=20
    )

    assert events == [] and total == 0
    sql, params = conn.executed[0]
    assert "tenant_id = %s AND event_type = %s AND account_id = %s AND created_at >= %s" in sql
    assert sql.endswith("ORDER BY id DESC LIMIT %s OFFSET %s")
    assert params == ("acme", "login_failed", account_id, since, 10, 20)


def test_non_uuid_ids_short_circuit_without_queries():
    conn = FakeConnection()
    store = _store(conn)

    assert store.get_account("not-a-uuid") is None
    assert store.get_session_device("other") is None
    assert store.delete_session_device("other") is None
    assert store.set_employment_status("acme", ["x", "y"], "inactive") == []
    assert store.list_audit_events("acme", account_id="nope") == ([], 0)
    assert conn.executed == []


def test_connection_failure_raises_store_unavailable():
    store = _store(FakeConnection())
    store.pool = DownPool()

    with pytest.raises(StoreUnavailable) as excinfo:
        store.verify_connection()

    assert excinfo.value.backend == "postgres"
    assert "hunter2" not in str(excinfo.value)
