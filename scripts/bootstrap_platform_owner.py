#!/usr/bin/env python3
"""Create a platform-level owner that is not bound to any tenant.

Usage:
    PLATFORM_EMAIL=ops@example.com PLATFORM_PASSWORD='Long-Passw0rd!' python scripts/bootstrap_platform_owner.py

    python scripts/bootstrap_platform_owner.py --email ops@example.com --password 'Long-Passw0rd!' --first-name Ops

Environment Variables:
    PLATFORM_EMAIL: Email for the platform owner
    PLATFORM_PASSWORD: Password (at least 12 characters, 3+ character classes)
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_platform_owner(email: str, password: str, first_name: str, dry_run: bool = False) -> dict:
    """Create the platform owner unless the email is already taken.

    Returns:
        dict with user_id, email and status ('created', 'exists' or 'dry_run')
    """
    # Import here so the env defaults below apply before config loads
    from tenantcrm.service.runtime import get_runtime
    from tenantcrm.storage.common import ROLE_PLATFORM_OWNER, normalize_email

    runtime = get_runtime()
    email = normalize_email(email)

    existing = runtime.store.get_platform_user_by_email(email)
    if existing:
        print(f"Platform user {email} already exists (id: {existing.id}, role: {existing.role})")
        return {"user_id": existing.id, "email": email, "status": "exists"}
    if runtime.store.email_exists(email):
        raise RuntimeError(f"{email} already belongs to a tenant user")

    if dry_run:
        print(f"[DRY RUN] Would create platform owner: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email=email,
        password_hash=runtime.hasher.hash(password),
        first_name=first_name,
        role=ROLE_PLATFORM_OWNER,
        tenant_id=None,
    )
    print(f"Created platform owner: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a platform owner for Tenant CRM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("PLATFORM_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("PLATFORM_PASSWORD"))
    parser.add_argument("--first-name", default="Platform")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or PLATFORM_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or PLATFORM_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        bootstrap_platform_owner(args.email, args.password, args.first_name, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
