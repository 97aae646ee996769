"""Helpers shared between the memory and postgres credential stores.

Both backends must encrypt MFA secrets and chain audit entries identically so
that data written by one can be verified by the other.
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from hrsecurity.storage.models import SecurityAuditEvent, as_utc

GENESIS_HASH = "0" * 64


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MfaSecretCipher:
    """Fernet wrapper for MFA secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        try:
            self._fernet = Fernet(self._derive_cipher_key(key_material))
        except ValueError as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if secret is None:
            return None
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("stored MFA secret cannot be decrypted") from exc


def _canonical_event(event: SecurityAuditEvent, prev_hash: str) -> str:
    created_at = as_utc(event.created_at)
    payload: Dict[str, Any] = {
        "tenant_id": event.tenant_id,
        "event_type": event.event_type,
        "account_id": event.account_id,
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "metadata": event.metadata or {},
        "created_at": created_at.isoformat() if created_at else None,
        "prev_hash": prev_hash,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def audit_entry_digest(event: SecurityAuditEvent, prev_hash: Optional[str]) -> str:
    """SHA-256 over the canonical event body chained to the previous entry."""
    chained = prev_hash or GENESIS_HASH
    return hashlib.sha256(_canonical_event(event, chained).encode()).hexdigest()


def seal_audit_event(event: SecurityAuditEvent, prev_hash: Optional[str]) -> SecurityAuditEvent:
    event.prev_hash = prev_hash or GENESIS_HASH
    event.entry_hash = audit_entry_digest(event, event.prev_hash)
    return event
