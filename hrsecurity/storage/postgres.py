from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool, PoolTimeout

from hrsecurity.logging import get_logger, sanitize_error_message
from hrsecurity.storage.common import (
    MfaSecretCipher,
    normalize_email,
    seal_audit_event,
)
from hrsecurity.storage.errors import ConstraintViolation, StoreUnavailable
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

_REQUIRED_TABLES = [
    "account",
    "backup_code",
    "session_device",
    "tenant_security_policy",
    "security_audit_event",
]

# Single statement: increment, restart after an expired lock, and lock on threshold.
# SET expressions all read the pre-update row, so concurrent failures serialize on
# the row lock and none of them can skip the threshold.
_RECORD_FAILURE_SQL = """
UPDATE account
SET failed_login_attempts = CASE
        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
        ELSE failed_login_attempts + 1
    END,
    locked_until = CASE
        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN
            CASE WHEN 1 >= %(max_attempts)s THEN %(lock_until)s ELSE NULL END
        WHEN locked_until IS NULL AND failed_login_attempts + 1 >= %(max_attempts)s
            THEN %(lock_until)s
        ELSE locked_until
    END
WHERE id = %(id)s
RETURNING failed_login_attempts, locked_until
"""

_CLAIM_BACKUP_CODE_SQL = """
UPDATE backup_code SET used_at = %s
WHERE id = %s AND used_at IS NULL
RETURNING id
"""


def _is_uuid(value: Optional[str]) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


_POLICY_COLUMNS = (
    "mfa_policy",
    "mfa_grace_period_days",
    "password_min_length",
    "password_require_uppercase",
    "password_require_number",
    "password_require_special",
    "session_timeout_minutes",
    "updated_at",
)


class PostgresStore:
    """Postgres-backed credential store built on atomic single-statement updates."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = MfaSecretCipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise StoreUnavailable("postgres") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Fail fast when the account security tables are missing."""
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_account_security.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- row mapping --------------------------------------------------------

    def _account_from_row(self, row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            tenant_id=row["tenant_id"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role") or "employee",
            full_name=row.get("full_name"),
            employment_status=row.get("employment_status") or ACTIVE,
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=as_utc(row.get("locked_until")),
            mfa_enabled=bool(row.get("mfa_enabled")),
            mfa_secret=self._cipher.decrypt(row.get("mfa_secret")),
            mfa_enabled_at=as_utc(row.get("mfa_enabled_at")),
            last_login_at=as_utc(row.get("last_login_at")),
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _code_from_row(row: Dict[str, Any]) -> BackupCode:
        return BackupCode(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            tenant_id=row["tenant_id"],
            code_hash=row["code_hash"],
            used_at=as_utc(row.get("used_at")),
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _device_from_row(row: Dict[str, Any]) -> SessionDevice:
        return SessionDevice(
            id=str(row["id"]),
            tenant_id=row["tenant_id"],
            account_id=str(row["account_id"]),
            session_id=row["session_id"],
            device_name=row["device_name"],
            ip_address=row.get("ip_address"),
            last_active=as_utc(row["last_active"]),
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _event_from_row(row: Dict[str, Any]) -> SecurityAuditEvent:
        return SecurityAuditEvent(
            id=row["id"],
            tenant_id=row["tenant_id"],
            event_type=row["event_type"],
            account_id=str(row["account_id"]) if row.get("account_id") else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            metadata=row.get("metadata") or {},
            created_at=as_utc(row["created_at"]),
            prev_hash=row.get("prev_hash"),
            entry_hash=row.get("entry_hash"),
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, tenant_id, email, password_hash, role, full_name, employment_status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        tenant_id,
                        normalize_email(email),
                        password_hash,
                        role,
                        full_name,
                        employment_status,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, tenant_id: str, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE tenant_id = %s AND lower(email) = %s",
                (tenant_id, normalize_email(email)),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(self, tenant_id: str) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account WHERE tenant_id = %s ORDER BY created_at", (tenant_id,)
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def update_password_hash(self, account_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, account_id),
            ).fetchone()
        return row is not None

    def set_employment_status(
        self, tenant_id: str, account_ids: Sequence[str], status: str
    ) -> List[str]:
        account_ids = [account_id for account_id in account_ids if _is_uuid(account_id)]
        if not account_ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE account SET employment_status = %s
                WHERE tenant_id = %s AND id = ANY(%s::uuid[]) AND employment_status <> %s
                RETURNING id
                """,
                (status, tenant_id, list(account_ids), status),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def list_inactive_accounts(self, tenant_id: str, cutoff: datetime) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM account
                WHERE tenant_id = %s AND employment_status = %s
                  AND (last_login_at IS NULL OR last_login_at < %s)
                ORDER BY COALESCE(last_login_at, created_at) ASC
                """,
                (tenant_id, ACTIVE, cutoff),
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def mfa_stats(self, tenant_id: str) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS total_users,
                       count(*) FILTER (WHERE mfa_enabled) AS mfa_enabled_count
                FROM account
                WHERE tenant_id = %s AND employment_status = %s
                """,
                (tenant_id, ACTIVE),
            ).fetchone()
        return {
            "total_users": int(row["total_users"] or 0),
            "mfa_enabled_count": int(row["mfa_enabled_count"] or 0),
        }

    # -- lockout counters ---------------------------------------------------

    def record_failed_login(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[LockoutOutcome]:
        with self._connect() as conn:
            row = conn.execute(
                _RECORD_FAILURE_SQL,
                {
                    "id": account_id,
                    "now": now,
                    "max_attempts": max_attempts,
                    "lock_until": lock_until,
                },
            ).fetchone()
        if not row:
            return None
        locked_until = as_utc(row.get("locked_until"))
        return LockoutOutcome(
            attempts=row["failed_login_attempts"],
            max_attempts=max_attempts,
            locked_until=locked_until,
            # Only the statement that wrote our own timestamp triggered the lock
            locked=locked_until is not None and locked_until == as_utc(lock_until),
        )

    def record_successful_login(self, account_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET failed_login_attempts = 0, locked_until = NULL, last_login_at = %s
                WHERE id = %s
                """,
                (now, account_id),
            )

    def clear_lockout(self, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET failed_login_attempts = 0, locked_until = NULL
                WHERE id = %s AND (failed_login_attempts > 0 OR locked_until IS NOT NULL)
                RETURNING id
                """,
                (account_id,),
            ).fetchone()
        return row is not None

    # -- MFA ----------------------------------------------------------------

    def enable_mfa(
        self,
        account_id: str,
        secret: str,
        enabled_at: datetime,
        code_hashes: Sequence[str],
    ) -> List[BackupCode]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE account
                SET mfa_secret = %s, mfa_enabled = TRUE, mfa_enabled_at = %s
                WHERE id = %s AND mfa_enabled = FALSE
                RETURNING tenant_id
                """,
                (self._cipher.encrypt(secret), enabled_at, account_id),
            ).fetchone()
            if not row:
                raise ConstraintViolation("mfa already enabled", {"field": "mfa_enabled"})
            return self._replace_codes(conn, account_id, row["tenant_id"], code_hashes)

    def disable_mfa(self, account_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE account
                SET mfa_secret = NULL, mfa_enabled = FALSE, mfa_enabled_at = NULL
                WHERE id = %s AND mfa_enabled = TRUE
                RETURNING id
                """,
                (account_id,),
            ).fetchone()
            if not row:
                return False
            conn.execute("DELETE FROM backup_code WHERE account_id = %s", (account_id,))
        return True

    def replace_backup_codes(
        self, account_id: str, code_hashes: Sequence[str]
    ) -> List[BackupCode]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT tenant_id FROM account WHERE id = %s FOR UPDATE", (account_id,)
            ).fetchone()
            if not row:
                raise ConstraintViolation("account not found", {"field": "account_id"})
            return self._replace_codes(conn, account_id, row["tenant_id"], code_hashes)

    def _replace_codes(
        self,
        conn: psycopg.Connection,
        account_id: str,
        tenant_id: str,
        code_hashes: Sequence[str],
    ) -> List[BackupCode]:
        conn.execute("DELETE FROM backup_code WHERE account_id = %s", (account_id,))
        codes = [
            BackupCode(
                id=new_id(),
                account_id=account_id,
                tenant_id=tenant_id,
                code_hash=code_hash,
            )
            for code_hash in code_hashes
        ]
        with conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO backup_code (id, account_id, tenant_id, code_hash, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                [(c.id, c.account_id, c.tenant_id, c.code_hash, c.created_at) for c in codes],
            )
        return codes

    def list_unused_backup_codes(self, account_id: str) -> List[BackupCode]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM backup_code
                WHERE account_id = %s AND used_at IS NULL
                ORDER BY created_at
                """,
                (account_id,),
            ).fetchall()
        return [self._code_from_row(row) for row in rows]

    def count_unused_backup_codes(self, account_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS remaining FROM backup_code WHERE account_id = %s AND used_at IS NULL",
                (account_id,),
            ).fetchone()
        return int(row["remaining"] or 0)

    def claim_backup_code(self, code_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(_CLAIM_BACKUP_CODE_SQL, (used_at, code_id)).fetchone()
        return row is not None

    # -- session devices ----------------------------------------------------

    def create_session_device(self, device: SessionDevice) -> SessionDevice:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO session_device
                    (id, tenant_id, account_id, session_id, device_name, ip_address, last_active, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    device.id,
                    device.tenant_id,
                    device.account_id,
                    device.session_id,
                    device.device_name,
                    device.ip_address,
                    device.last_active,
                    device.created_at,
                ),
            )
        return device

    def list_session_devices(self, account_id: str) -> List[SessionDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM session_device WHERE account_id = %s ORDER BY last_active DESC",
                (account_id,),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def get_session_device(self, device_id: str) -> Optional[SessionDevice]:
        if not _is_uuid(device_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_device WHERE id = %s", (device_id,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def get_session_device_by_session(self, session_id: str) -> Optional[SessionDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_device WHERE session_id = %s", (session_id,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def delete_session_device(self, device_id: str) -> Optional[SessionDevice]:
        if not _is_uuid(device_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM session_device WHERE id = %s RETURNING *", (device_id,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def delete_session_device_by_session(self, session_id: str) -> Optional[SessionDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM session_device WHERE session_id = %s RETURNING *", (session_id,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def delete_session_devices(
        self, account_id: str, *, except_session_id: Optional[str] = None
    ) -> List[SessionDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                DELETE FROM session_device
                WHERE account_id = %s AND (%s::text IS NULL OR session_id <> %s)
                RETURNING *
                """,
                (account_id, except_session_id, except_session_id),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def touch_session_device(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE session_device SET last_active = %s WHERE session_id = %s RETURNING id",
                (now, session_id),
            ).fetchone()
        return row is not None

    # -- tenant policy ------------------------------------------------------

    def get_tenant_policy(self, tenant_id: str) -> Optional[TenantSecurityPolicy]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_security_policy WHERE tenant_id = %s", (tenant_id,)
            ).fetchone()
        if not row:
            return None
        values = {column: row[column] for column in _POLICY_COLUMNS}
        values["updated_at"] = as_utc(values["updated_at"])
        return TenantSecurityPolicy(tenant_id=row["tenant_id"], **values)

    def save_tenant_policy(self, policy: TenantSecurityPolicy) -> TenantSecurityPolicy:
        columns = ", ".join(_POLICY_COLUMNS)
        placeholders = ", ".join(["%s"] * (len(_POLICY_COLUMNS) + 1))
        updates = ", ".join(f"{column} = EXCLUDED.{column}" for column in _POLICY_COLUMNS)
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO tenant_security_policy (tenant_id, {columns})
                VALUES ({placeholders})
                ON CONFLICT (tenant_id) DO UPDATE SET {updates}
                """,
                (policy.tenant_id, *(getattr(policy, column) for column in _POLICY_COLUMNS)),
            )
        return policy

    # -- audit trail --------------------------------------------------------

    def append_audit_event(self, event: SecurityAuditEvent) -> SecurityAuditEvent:
        with self._connect() as conn, conn.transaction():
            # Serialize appends per tenant so each entry chains to the true predecessor
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (event.tenant_id,))
            prev = conn.execute(
                """
                SELECT entry_hash FROM security_audit_event
                WHERE tenant_id = %s ORDER BY id DESC LIMIT 1
                """,
                (event.tenant_id,),
            ).fetchone()
            seal_audit_event(event, prev["entry_hash"] if prev else None)
            row = conn.execute(
                """
                INSERT INTO security_audit_event
                    (tenant_id, account_id, event_type, ip_address, user_agent, metadata,
                     created_at, prev_hash, entry_hash)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    event.tenant_id,
                    event.account_id,
                    event.event_type,
                    event.ip_address,
                    event.user_agent,
                    Json(event.metadata or {}),
                    event.created_at,
                    event.prev_hash,
                    event.entry_hash,
                ),
            ).fetchone()
        event.id = row["id"]
        return event

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
        if account_id and not _is_uuid(account_id):
            return [], 0
        clauses = ["tenant_id = %s"]
        params: List[Any] = [tenant_id]
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if since:
            clauses.append("created_at >= %s")
            params.append(since)
        if until:
            clauses.append("created_at <= %s")
            params.append(until)
        where = " AND ".join(clauses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_audit_event WHERE {where} ORDER BY id DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
            total = conn.execute(
                f"SELECT count(*) AS total FROM security_audit_event WHERE {where}",
                tuple(params),
            ).fetchone()
        return [self._event_from_row(row) for row in rows], int(total["total"] or 0)

    def list_audit_chain(self, tenant_id: str) -> List[SecurityAuditEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM security_audit_event WHERE tenant_id = %s ORDER BY id ASC",
                (tenant_id,),
            ).fetchall()
        return [self._event_from_row(row) for row in rows]
