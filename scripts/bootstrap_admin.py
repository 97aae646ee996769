#!/usr/bin/env python3
"""Bootstrap the first admin account of a tenant.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --tenant acme --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (checked against the tenant password policy)
    ADMIN_TENANT_ID: Tenant to create the account in (defaults to DEFAULT_TENANT_ID)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    tenant_id: Optional[str],
    email: str,
    password: str,
    full_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create an admin account unless the email is already taken in the tenant.

    Returns:
        dict with account_id, email, tenant_id and status
    """
    # Import here to avoid loading config before env vars are set
    from hrsecurity.service.errors import ServiceError
    from hrsecurity.service.runtime import get_runtime

    runtime = get_runtime()
    tenant_id = tenant_id or runtime.settings.default_tenant_id
    email = email.strip().lower()

    existing = runtime.store.get_account_by_email(tenant_id, email)
    if existing:
        status = "already_admin" if existing.role == "admin" else "exists"
        print(f"Account {email} already exists in {tenant_id} as {existing.role} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "tenant_id": tenant_id, "status": status}

    if dry_run:
        print(f"[DRY RUN] Would create admin account {email} in tenant {tenant_id}")
        return {"account_id": None, "email": email, "tenant_id": tenant_id, "status": "dry_run"}

    try:
        account = await runtime.auth.provision_account(
            tenant_id, email, password, role="admin", full_name=full_name
        )
    except ServiceError as exc:
        violations = (exc.detail or {}).get("violations") or []
        for violation in violations:
            print(f"  - {violation}")
        raise
    finally:
        await runtime.close()

    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "tenant_id": tenant_id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for HR account security",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--tenant",
        default=os.environ.get("ADMIN_TENANT_ID"),
        help="Tenant id (or set ADMIN_TENANT_ID env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--full-name", default=os.environ.get("ADMIN_FULL_NAME"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/hrsecurity-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.tenant, args.email, args.password, args.full_name, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Tenant: {result['tenant_id']}")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")
    elif result["status"] == "exists":
        print("\nAn account with this email exists but is not an admin; no changes made.")


if __name__ == "__main__":
    main()
