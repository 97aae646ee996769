from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ClientContext:
    """Where a request came from, as recorded on audit events and devices."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    tenant_hint: Optional[str] = None


@dataclass
class AuthContext:
    """Resolved caller for an authenticated request."""

    account_id: str
    tenant_id: str
    role: str
    session_id: str
    csrf_token: str
    session_expires_at: datetime
    client: ClientContext = field(default_factory=ClientContext)
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def roles(self) -> list[str]:
        return [self.role]
