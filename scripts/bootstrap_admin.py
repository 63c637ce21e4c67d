#!/usr/bin/env python3
"""Provision the default tenant and a super admin into persisted state.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=SecurePassword123! STATE_PATH=./state \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email ops@example.com --password SecurePassword123! \
        --state-path ./state

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password for the super admin (at least 12 characters, 3+ classes)
    STATE_PATH: Directory holding the memory store's JSON state
    DEFAULT_TENANT_SLUG: Tenant the admin is made OWNER of (default: "default")
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote ``email`` to SUPER_ADMIN and make it OWNER of the default tenant.

    Returns:
        dict with user_id, email, tenant_id and status
        ('created', 'promoted', 'already_super_admin' or 'dry_run')
    """
    # imported late so the env vars set in main() are seen by Settings
    from pmoguard.service.runtime import get_runtime
    from pmoguard.storage.models import GlobalRole, TenantRole

    runtime = get_runtime()
    tenant = runtime.store.get_tenant_by_slug(runtime.settings.default_tenant_slug)
    tenant_id = tenant.id if tenant else None
    existing = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} super admin {email}")
        return {"user_id": existing.id if existing else None, "email": email, "tenant_id": tenant_id, "status": "dry_run"}

    if existing and existing.role == GlobalRole.SUPER_ADMIN:
        status = "already_super_admin"
        user = existing
    elif existing:
        user = runtime.store.update_user_role(existing.id, GlobalRole.SUPER_ADMIN)
        status = "promoted"
    else:
        user = runtime.auth.create_user(email, password, role=GlobalRole.SUPER_ADMIN)
        status = "created"

    if tenant is not None and runtime.store.get_tenant_membership(tenant.id, user.id) is None:
        runtime.store.add_tenant_member(tenant.id, user.id, TenantRole.OWNER)

    print(f"{status}: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "tenant_id": tenant_id, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for pmoguard",
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
        "--state-path",
        default=os.environ.get("STATE_PATH"),
        help="Directory for persisted state (or set STATE_PATH env var)",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not args.state_path:
        print("Error: --state-path or STATE_PATH environment variable required")
        sys.exit(1)
    os.environ["STATE_PATH"] = args.state_path

    if not os.environ.get("JWT_SECRET"):
        # only needed to satisfy settings validation; no tokens are issued
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Tenant ID: {result['tenant_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to super admin!")
    elif result["status"] == "already_super_admin":
        print("\nNo changes needed - user is already a super admin.")


if __name__ == "__main__":
    main()
