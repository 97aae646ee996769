from __future__ import annotations

import itertools
import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from hrsecurity.logging import get_logger
from hrsecurity.storage.common import (
    MfaSecretCipher,
    normalize_email,
    seal_audit_event,
)
from hrsecurity.storage.errors import ConstraintViolation
from hrsecurity.storage.models import (
    ACTIVE,
    Account,
    BackupCode,
    LockoutOutcome,
    SecurityAuditEvent,
    SessionDevice,
    TenantSecurityPolicy,
    as_utc,
    new_id,
)

T = TypeVar("T")

_DATETIME_FIELDS = {
    "locked_until",
    "mfa_enabled_at",
    "last_login_at",
    "created_at",
    "used_at",
    "last_active",
    "updated_at",
}


class MemoryStore:
    """In-memory credential store with optional JSON snapshots on disk.

    Every public method runs under a single re-entrant lock, so each call is
    one atomic unit of work (the memory analogue of a single SQL statement).
    """

    def __init__(
        self,
        fs_root: str = "/tmp/hrsecurity",
        *,
        mfa_encryption_key: str,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.backup_codes: Dict[str, BackupCode] = {}
        self.devices: Dict[str, SessionDevice] = {}
        self.policies: Dict[str, TenantSecurityPolicy] = {}
        self.audit_events: List[SecurityAuditEvent] = []
        self._audit_seq = itertools.count(1)
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self._cipher = MfaSecretCipher(mfa_encryption_key)
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        tenant_id: str,
        email: str,
        password_hash: str,
        *,
        role: str = "employee",
        full_name: Optional[str] = None,
        employment_status: str = ACTIVE,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            for existing in self.accounts.values():
                if existing.tenant_id == tenant_id and existing.email == normalized:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=new_id(),
                tenant_id=tenant_id,
                email=normalized,
                password_hash=password_hash,
                role=role,
                full_name=full_name,
                employment_status=employment_status,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, tenant_id: str, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.tenant_id == tenant_id and account.email == normalized:
                    return replace(account)
        return None

    def list_accounts(self, tenant_id: str) -> List[Account]:
        with self._data_lock:
            return [replace(a) for a in self.accounts.values() if a.tenant_id == tenant_id]

    def update_password_hash(self, account_id: str, password_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            self._persist_state()
            return True

    def set_employment_status(
        self, tenant_id: str, account_ids: Sequence[str], status: str
    ) -> List[str]:
        changed: List[str] = []
        with self._data_lock:
            for account_id in account_ids:
                account = self.accounts.get(account_id)
                if not account or account.tenant_id != tenant_id:
                    continue
                if account.employment_status == status:
                    continue
                account.employment_status = status
                changed.append(account_id)
            if changed:
                self._persist_state()
        return changed

    def list_inactive_accounts(self, tenant_id: str, cutoff: datetime) -> List[Account]:
        with self._data_lock:
            stale = [
                replace(a)
                for a in self.accounts.values()
                if a.tenant_id == tenant_id
                and a.is_active
                and (a.last_login_at is None or as_utc(a.last_login_at) < cutoff)
            ]
        return sorted(stale, key=lambda a: as_utc(a.last_login_at or a.created_at))

    def mfa_stats(self, tenant_id: str) -> Dict[str, int]:
        with self._data_lock:
            active = [
                a for a in self.accounts.values() if a.tenant_id == tenant_id and a.is_active
            ]
            enabled = sum(1 for a in active if a.mfa_enabled)
        return {"total_users": len(active), "mfa_enabled_count": enabled}

    # -- lockout counters ---------------------------------------------------

    def record_failed_login(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[LockoutOutcome]:
        """Increment the failure counter and lock on reaching ``max_attempts``.

        A lock whose expiry has passed restarts the count at this failure.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            current_lock = as_utc(account.locked_until)
            if current_lock is not None and current_lock <= now:
                attempts = 1
                current_lock = None
            else:
                attempts = account.failed_login_attempts + 1
            just_locked = False
            if attempts >= max_attempts and current_lock is None:
                current_lock = lock_until
                just_locked = True
            account.failed_login_attempts = attempts
            account.locked_until = current_lock
            self._persist_state()
            return LockoutOutcome(
                attempts=attempts,
                max_attempts=max_attempts,
                locked_until=current_lock,
                locked=just_locked,
            )

    def record_successful_login(self, account_id: str, now: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.failed_login_attempts = 0
            account.locked_until = None
            account.last_login_at = now
            self._persist_state()

    def clear_lockout(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            was_locked = account.locked_until is not None or account.failed_login_attempts > 0
            account.failed_login_attempts = 0
            account.locked_until = None
            self._persist_state()
            return was_locked

    # -- MFA ----------------------------------------------------------------

    def enable_mfa(
        self,
        account_id: str,
        secret: str,
        enabled_at: datetime,
        code_hashes: Sequence[str],
    ) -> List[BackupCode]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"field": "account_id"})
            if account.mfa_enabled:
                raise ConstraintViolation("mfa already enabled", {"field": "mfa_enabled"})
            account.mfa_secret = secret
            account.mfa_enabled = True
            account.mfa_enabled_at = enabled_at
            codes = self._replace_codes_locked(account, code_hashes)
            self._persist_state()
            return codes

    def disable_mfa(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or not account.mfa_enabled:
                return False
            account.mfa_secret = None
            account.mfa_enabled = False
            account.mfa_enabled_at = None
            self._delete_codes_locked(account_id)
            self._persist_state()
            return True

    def replace_backup_codes(
        self, account_id: str, code_hashes: Sequence[str]
    ) -> List[BackupCode]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"field": "account_id"})
            codes = self._replace_codes_locked(account, code_hashes)
            self._persist_state()
            return codes

    def _replace_codes_locked(
        self, account: Account, code_hashes: Sequence[str]
    ) -> List[BackupCode]:
        self._delete_codes_locked(account.id)
        codes = [
            BackupCode(
                id=new_id(),
                account_id=account.id,
                tenant_id=account.tenant_id,
                code_hash=code_hash,
            )
            for code_hash in code_hashes
        ]
        for code in codes:
            self.backup_codes[code.id] = code
        return [replace(c) for c in codes]

    def _delete_codes_locked(self, account_id: str) -> None:
        for code_id in [c.id for c in self.backup_codes.values() if c.account_id == account_id]:
            del self.backup_codes[code_id]

    def list_unused_backup_codes(self, account_id: str) -> List[BackupCode]:
        with self._data_lock:
            codes = [
                replace(c)
                for c in self.backup_codes.values()
                if c.account_id == account_id and c.used_at is None
            ]
        return sorted(codes, key=lambda c: c.created_at)

    def count_unused_backup_codes(self, account_id: str) -> int:
        return len(self.list_unused_backup_codes(account_id))

    def claim_backup_code(self, code_id: str, used_at: datetime) -> bool:
        """Mark a code used only if it is still unused; False means another request won."""
        with self._data_lock:
            code = self.backup_codes.get(code_id)
            if not code or code.used_at is not None:
                return False
            code.used_at = used_at
            self._persist_state()
            return True

    # -- session devices ----------------------------------------------------

    def create_session_device(self, device: SessionDevice) -> SessionDevice:
        with self._data_lock:
            self.devices[device.id] = replace(device)
            self._persist_state()
            return replace(device)

    def list_session_devices(self, account_id: str) -> List[SessionDevice]:
        with self._data_lock:
            devices = [replace(d) for d in self.devices.values() if d.account_id == account_id]
        return sorted(devices, key=lambda d: as_utc(d.last_active), reverse=True)

    def get_session_device(self, device_id: str) -> Optional[SessionDevice]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return replace(device) if device else None

    def get_session_device_by_session(self, session_id: str) -> Optional[SessionDevice]:
        with self._data_lock:
            for device in self.devices.values():
                if device.session_id == session_id:
                    return replace(device)
        return None

    def delete_session_device(self, device_id: str) -> Optional[SessionDevice]:
        with self._data_lock:
            device = self.devices.pop(device_id, None)
            if device:
                self._persist_state()
            return device

    def delete_session_device_by_session(self, session_id: str) -> Optional[SessionDevice]:
        with self._data_lock:
            for device_id, device in list(self.devices.items()):
                if device.session_id == session_id:
                    del self.devices[device_id]
                    self._persist_state()
                    return device
        return None

    def delete_session_devices(
        self, account_id: str, *, except_session_id: Optional[str] = None
    ) -> List[SessionDevice]:
        with self._data_lock:
            removed = [
                d
                for d in self.devices.values()
                if d.account_id == account_id and d.session_id != except_session_id
            ]
            for device in removed:
                del self.devices[device.id]
            if removed:
                self._persist_state()
            return removed

    def touch_session_device(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            for device in self.devices.values():
                if device.session_id == session_id:
                    device.last_active = now
                    return True
        return False

    # -- tenant policy ------------------------------------------------------

    def get_tenant_policy(self, tenant_id: str) -> Optional[TenantSecurityPolicy]:
        with self._data_lock:
            policy = self.policies.get(tenant_id)
            return replace(policy) if policy else None

    def save_tenant_policy(self, policy: TenantSecurityPolicy) -> TenantSecurityPolicy:
        with self._data_lock:
            self.policies[policy.tenant_id] = replace(policy)
            self._persist_state()
            return replace(policy)

    # -- audit trail --------------------------------------------------------

    def append_audit_event(self, event: SecurityAuditEvent) -> SecurityAuditEvent:
        with self._data_lock:
            prev_hash = None
            for existing in reversed(self.audit_events):
                if existing.tenant_id == event.tenant_id:
                    prev_hash = existing.entry_hash
                    break
            stored = replace(event, metadata=dict(event.metadata or {}))
            stored.id = next(self._audit_seq)
            seal_audit_event(stored, prev_hash)
            self.audit_events.append(stored)
            self._persist_state()
            return replace(stored)

    def list_audit_events(
        self,
        tenant_id: str,
        *,
        event_type: Optional[str] = None,
        account_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[SecurityAuditEvent], int]:
        with self._data_lock:
            matches = [
                e
                for e in self.audit_events
                if e.tenant_id == tenant_id
                and (event_type is None or e.event_type == event_type)
                and (account_id is None or e.account_id == account_id)
                and (since is None or as_utc(e.created_at) >= since)
                and (until is None or as_utc(e.created_at) <= until)
            ]
        matches.sort(key=lambda e: e.id or 0, reverse=True)
        page = [replace(e) for e in matches[offset : offset + limit]]
        return page, len(matches)

    def list_audit_chain(self, tenant_id: str) -> List[SecurityAuditEvent]:
        with self._data_lock:
            return [replace(e) for e in self.audit_events if e.tenant_id == tenant_id]

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- snapshot persistence -----------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "security_store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls: Type[T], raw: dict) -> T:
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in raw.items():
            if key not in known:
                continue
            if key in _DATETIME_FIELDS and isinstance(value, str):
                value = as_utc(datetime.fromisoformat(value))
            values[key] = value
        return cls(**values)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        accounts = []
        for account in self.accounts.values():
            data = self._serialize(account)
            data["mfa_secret"] = self._cipher.encrypt(account.mfa_secret)
            accounts.append(data)
        state = {
            "accounts": accounts,
            "backup_codes": [self._serialize(c) for c in self.backup_codes.values()],
            "devices": [self._serialize(d) for d in self.devices.values()],
            "policies": [self._serialize(p) for p in self.policies.values()],
            "audit_events": [self._serialize(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {}
        for raw in data.get("accounts", []):
            account = self._deserialize(Account, raw)
            account.mfa_secret = self._cipher.decrypt(raw.get("mfa_secret"))
            self.accounts[account.id] = account
        self.backup_codes = {
            c.id: c for c in self._load_many(BackupCode, data.get("backup_codes", []))
        }
        self.devices = {
            d.id: d for d in self._load_many(SessionDevice, data.get("devices", []))
        }
        self.policies = {
            p.tenant_id: p
            for p in self._load_many(TenantSecurityPolicy, data.get("policies", []))
        }
        self.audit_events = self._load_many(SecurityAuditEvent, data.get("audit_events", []))
        last_id = max((e.id or 0 for e in self.audit_events), default=0)
        self._audit_seq = itertools.count(last_id + 1)
        self.logger.info(
            "memory_store_state_loaded",
            accounts=len(self.accounts),
            audit_events=len(self.audit_events),
        )
        return True

    def _load_many(self, cls: Type[T], rows: Iterable[dict]) -> List[T]:
        return [self._deserialize(cls, row) for row in rows]
