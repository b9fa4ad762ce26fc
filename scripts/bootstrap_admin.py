#!/usr/bin/env python3
"""Bootstrap the internal company and a platform administrator.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email ops@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the platform administrator
    ADMIN_PASSWORD: Password for the administrator (checked against the default policy)
    INTERNAL_COMPANY_NAME: Name of the internal company (default "Tradegate Internal")
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, company_name: str, dry_run: bool = False) -> dict:
    """Create (or reuse) the internal company and give ``email`` the platformAdmin role."""
    # imported late so the env defaults below apply to settings
    from tradegate.service.runtime import get_runtime
    from tradegate.storage.models import UserType

    runtime = get_runtime()
    store = runtime.store

    existing = store.get_user_by_email(email)
    platform_admin = store.get_role_by_name("platformAdmin", "platform")
    if platform_admin is None:
        raise RuntimeError("platformAdmin role is missing; default roles were not seeded")

    if existing and not existing.is_internal:
        raise RuntimeError(f"{email} belongs to a company user; pick another address")

    if existing:
        roles = runtime.permissions.user_roles(existing, existing.company_id)
        if any(r.id == platform_admin.id for r in roles):
            print(f"User {email} is already a platform admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant platformAdmin to {email}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.permissions.assign_role(existing, platform_admin, None)
        print(f"Granted platformAdmin to {email} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create platform admin {email} in {company_name!r}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    company = next(
        (c for c in store.list_companies(is_internal=True) if c.name == company_name), None
    )
    if company is None:
        company = store.create_company(company_name, is_internal=True)
        print(f"Created internal company {company_name!r} (id: {company.id})")

    user, _ = runtime.auth.admin_create_user(
        email=email,
        password=password,
        user_type=UserType.INTERNAL,
        company_id=company.id,
    )
    runtime.permissions.assign_role(user, platform_admin, None)
    print(f"Created platform admin: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "company_id": company.id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a platform administrator for Tradegate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
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
    parser.add_argument(
        "--company",
        default=os.environ.get("INTERNAL_COMPANY_NAME", "Tradegate Internal"),
        help="Internal company name",
    )
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
        os.environ["SHARED_FS_ROOT"] = "/tmp/tradegate-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.company, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nPlatform admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Company ID: {result['company_id']}")
    elif result["status"] == "promoted":
        print("\nExisting internal user promoted to platform admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a platform admin.")


if __name__ == "__main__":
    main()
