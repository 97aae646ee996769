from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from hrsecurity.config import MfaPolicy
from hrsecurity.logging import get_logger
from hrsecurity.service import audit as events
from hrsecurity.service.audit import AuditLog
from hrsecurity.service.context import ClientContext
from hrsecurity.service.errors import PolicyViolationError, ValidationError
from hrsecurity.storage.models import TenantSecurityPolicy, utcnow

logger = get_logger(__name__)


class SecurityPolicyPatch(BaseModel):
    """Partial update to a tenant's security policy; omitted fields are untouched."""

    model_config = ConfigDict(extra="forbid")

    mfa_policy: Optional[MfaPolicy] = None
    mfa_grace_period_days: Optional[int] = Field(default=None, ge=0, le=30)
    password_min_length: Optional[int] = Field(default=None, ge=8, le=16)
    password_require_uppercase: Optional[bool] = None
    password_require_number: Optional[bool] = None
    password_require_special: Optional[bool] = None
    session_timeout_minutes: Optional[int] = Field(default=None, ge=15, le=480)

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        if "mfa_policy" in data:
            data["mfa_policy"] = MfaPolicy(data["mfa_policy"]).value
        return data


def _violation_from(exc: PydanticValidationError) -> PolicyViolationError:
    violations = []
    first_field = None
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())) or "body"
        first_field = first_field or field
        violations.append(f"{field}: {err.get('msg', 'invalid value')}")
    return PolicyViolationError(
        violations[0] if violations else "invalid security policy",
        violations=violations,
        field=first_field,
    )


class SecurityPolicyService:
    def __init__(self, store, audit: AuditLog) -> None:
        self.store = store
        self.audit = audit

    def get(self, tenant_id: str) -> TenantSecurityPolicy:
        """Tenant policy, falling back to defaults for tenants that never saved one."""
        return self.store.get_tenant_policy(tenant_id) or TenantSecurityPolicy(tenant_id=tenant_id)

    def password_requirements(self, tenant_id: str) -> Dict[str, Any]:
        policy = self.get(tenant_id)
        return {
            "min_length": policy.password_min_length,
            "require_uppercase": policy.password_require_uppercase,
            "require_number": policy.password_require_number,
            "require_special": policy.password_require_special,
        }

    @staticmethod
    def parse_patch(patch: Union[SecurityPolicyPatch, Mapping[str, Any]]) -> SecurityPolicyPatch:
        if isinstance(patch, SecurityPolicyPatch):
            return patch
        try:
            return SecurityPolicyPatch.model_validate(dict(patch))
        except PydanticValidationError as exc:
            raise _violation_from(exc) from exc

    async def update(
        self,
        tenant_id: str,
        patch: Union[SecurityPolicyPatch, Mapping[str, Any]],
        *,
        actor_id: Optional[str] = None,
        context: Optional[ClientContext] = None,
    ) -> TenantSecurityPolicy:
        # Validation happens before anything is read or written, so a bad
        # field leaves the stored policy untouched
        data = self.parse_patch(patch).changes()
        if not data:
            raise ValidationError("no policy fields to update")

        current = self.get(tenant_id)
        changed = {key: value for key, value in data.items() if getattr(current, key) != value}
        updated = self.store.save_tenant_policy(replace(current, **data, updated_at=utcnow()))
        logger.info(
            "security_policy_updated",
            tenant_id=tenant_id,
            actor_id=actor_id,
            changed_fields=sorted(changed),
        )
        await self.audit.record(
            events.SECURITY_POLICY_UPDATED,
            tenant_id=tenant_id,
            account_id=actor_id,
            context=context,
            metadata={"changes": changed},
        )
        return updated
