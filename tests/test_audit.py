from datetime import timedelta

import pytest

from hrsecurity.service.audit import AuditLog
from hrsecurity.service.context import ClientContext
from hrsecurity.service.errors import ValidationError
from hrsecurity.storage.common import GENESIS_HASH
from hrsecurity.storage.models import utcnow


async def _seed(runtime, count, tenant_id="acme", event_type="login_success"):
    for i in range(count):
        await runtime.audit.record(
            event_type,
            tenant_id=tenant_id,
            account_id=f"account-{i}",
            context=ClientContext(ip_address="198.51.100.1", user_agent="pytest"),
            metadata={"seq": i},
        )


@pytest.mark.asyncio
async def test_record_chains_entries_per_tenant(runtime):
    first = await runtime.audit.record("login_success", tenant_id="acme")
    await runtime.audit.record("login_success", tenant_id="globex")
    second = await runtime.audit.record("logout", tenant_id="acme")

    assert first.prev_hash == GENESIS_HASH
    assert second.prev_hash == first.entry_hash
    assert len(first.entry_hash) == 64


@pytest.mark.asyncio
async def test_record_captures_client_context(runtime):
    event = await runtime.audit.record(
        "login_failed",
        tenant_id="acme",
        context=ClientContext(ip_address="203.0.113.9", user_agent="agent/1.0"),
        metadata={"reason": "bad_password"},
    )

    assert event.ip_address == "203.0.113.9"
    assert event.user_agent == "agent/1.0"
    assert event.metadata == {"reason": "bad_password"}


@pytest.mark.asyncio
async def test_list_is_newest_first_with_total(runtime):
    await _seed(runtime, 5)

    page, total = runtime.audit.list_events("acme", limit=2, offset=1)

    assert total == 5
    assert [e.metadata["seq"] for e in page] == [3, 2]


@pytest.mark.asyncio
async def test_list_filters_by_type_account_and_time(runtime):
    await _seed(runtime, 3)
    await _seed(runtime, 2, event_type="logout")
    await _seed(runtime, 4, tenant_id="globex")

    logouts, total = runtime.audit.list_events("acme", event_type="logout")
    assert total == 2 and all(e.event_type == "logout" for e in logouts)

    by_account, total = runtime.audit.list_events("acme", account_id="account-1")
    assert total == 2

    future, total = runtime.audit.list_events("acme", since=utcnow() + timedelta(minutes=1))
    assert future == [] and total == 0


def test_list_rejects_bad_pagination(runtime):
    with pytest.raises(ValidationError):
        runtime.audit.list_events("acme", limit=0)
    with pytest.raises(ValidationError):
        runtime.audit.list_events("acme", offset=-1)
    with pytest.raises(ValidationError):
        now = utcnow()
        runtime.audit.list_events("acme", since=now, until=now - timedelta(hours=1))


@pytest.mark.asyncio
async def test_limit_is_clamped_to_maximum(runtime):
    audit = AuditLog(runtime.store, default_limit=2, max_limit=3)
    await _seed(runtime, 5)

    default_page, _ = audit.list_events("acme")
    clamped_page, total = audit.list_events("acme", limit=100)

    assert len(default_page) == 2
    assert len(clamped_page) == 3
    assert total == 5


@pytest.mark.asyncio
async def test_verify_chain_detects_tampering(runtime):
    await _seed(runtime, 4)
    assert runtime.audit.verify_chain("acme") == {
        "valid": True,
        "checked": 4,
        "first_broken_event_id": None,
    }

    tampered = [e for e in runtime.store.audit_events if e.tenant_id == "acme"][2]
    tampered.metadata["seq"] = 99

    result = runtime.audit.verify_chain("acme")
    assert result["valid"] is False
    assert result["checked"] == 2
    assert result["first_broken_event_id"] == tampered.id


class _BrokenStore:
    def append_audit_event(self, event):
        raise OSError("disk full")


@pytest.mark.asyncio
async def test_record_failure_is_swallowed():
    audit = AuditLog(_BrokenStore())

    assert await audit.record("login_success", tenant_id="acme") is None
