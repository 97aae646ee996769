from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable


class Capability(str, Enum):
    MANAGE_SECURITY_POLICY = "manage_security_policy"
    VIEW_SECURITY_AUDIT = "view_security_audit"
    VIEW_SECURITY_REPORTS = "view_security_reports"
    MANAGE_ACCOUNTS = "manage_accounts"


_GRANTS: Dict[Capability, FrozenSet[str]] = {
    Capability.MANAGE_SECURITY_POLICY: frozenset({"admin"}),
    Capability.VIEW_SECURITY_AUDIT: frozenset({"admin"}),
    Capability.VIEW_SECURITY_REPORTS: frozenset({"admin", "hr"}),
    Capability.MANAGE_ACCOUNTS: frozenset({"admin"}),
}


def has_capability(roles: Iterable[str], capability: Capability) -> bool:
    """Single authorisation decision point; unknown capabilities are denied."""
    allowed = _GRANTS.get(capability, frozenset())
    return any((role or "").lower() in allowed for role in roles)
