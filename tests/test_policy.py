import pytest

from hrsecurity.service import audit as events
from hrsecurity.service.errors import PolicyViolationError, ValidationError
from hrsecurity.service.policy import SecurityPolicyPatch, SecurityPolicyService


def test_unknown_tenant_gets_defaults(runtime):
    policy = runtime.policies.get("fresh-tenant")

    assert policy.tenant_id == "fresh-tenant"
    assert policy.mfa_policy == "optional"
    assert policy.mfa_grace_period_days == 7
    assert policy.password_min_length == 8
    assert policy.session_timeout_minutes == 480
    assert runtime.policies.password_requirements("fresh-tenant") == {
        "min_length": 8,
        "require_uppercase": True,
        "require_number": True,
        "require_special": False,
    }


def test_patch_changes_only_reports_supplied_fields():
    patch = SecurityPolicyPatch(mfa_policy="required", session_timeout_minutes=60)

    assert patch.changes() == {"mfa_policy": "required", "session_timeout_minutes": 60}


@pytest.mark.asyncio
async def test_update_applies_patch_and_audits_changes(runtime):
    updated = await runtime.policies.update(
        "acme",
        {"mfa_policy": "required", "password_min_length": 12, "session_timeout_minutes": 480},
        actor_id="admin-1",
    )

    assert updated.mfa_policy == "required"
    assert updated.password_min_length == 12
    assert updated.updated_at is not None
    assert runtime.policies.get("acme").password_min_length == 12

    audited, _ = runtime.store.list_audit_events("acme", event_type=events.SECURITY_POLICY_UPDATED)
    assert len(audited) == 1
    # Unchanged values are not reported as changes
    assert audited[0].metadata == {"changes": {"mfa_policy": "required", "password_min_length": 12}}
    assert audited[0].account_id == "admin-1"


@pytest.mark.asyncio
async def test_out_of_range_timeout_rejected_without_partial_apply(runtime):
    with pytest.raises(PolicyViolationError) as excinfo:
        await runtime.policies.update(
            "acme", {"password_min_length": 10, "session_timeout_minutes": 10}
        )

    assert excinfo.value.status_code == 422
    assert excinfo.value.detail["field"] == "session_timeout_minutes"
    assert runtime.policies.get("acme").password_min_length == 8
    assert runtime.store.get_tenant_policy("acme") is None


@pytest.mark.parametrize(
    "patch,field",
    [
        ({"mfa_grace_period_days": 31}, "mfa_grace_period_days"),
        ({"mfa_grace_period_days": -1}, "mfa_grace_period_days"),
        ({"password_min_length": 7}, "password_min_length"),
        ({"password_min_length": 17}, "password_min_length"),
        ({"session_timeout_minutes": 481}, "session_timeout_minutes"),
        ({"mfa_policy": "sometimes"}, "mfa_policy"),
        ({"lockout_minutes": 5}, "lockout_minutes"),
    ],
)
def test_parse_patch_rejects_invalid_values(patch, field):
    with pytest.raises(PolicyViolationError) as excinfo:
        SecurityPolicyService.parse_patch(patch)

    assert excinfo.value.field == field
    assert excinfo.value.violations


@pytest.mark.asyncio
async def test_empty_patch_is_a_validation_error(runtime):
    with pytest.raises(ValidationError):
        await runtime.policies.update("acme", {})
