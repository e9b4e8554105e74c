#!/usr/bin/env python3
"""Create or promote the first ADMIN account.

Usage:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Passw0rd' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password ...

An existing account with the same email is promoted to ADMIN, reactivated,
marked verified, and given the supplied password. Without DATABASE_URL the
file-backed memory store under SHARED_FS_ROOT is used.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


def validate_password(password: str) -> bool:
    """Admin passwords need 12+ characters from at least 3 character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    # Imported late so the environment defaults below apply to settings
    from userservice.service.runtime import get_runtime
    from userservice.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email.strip().lower())
    if existing is not None and Role(existing.role) is Role.ADMIN:
        return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
    if dry_run:
        action = "promote" if existing else "create"
        return {"user_id": existing.id if existing else None, "email": email, "status": f"dry_run_{action}"}

    user = await runtime.auth.create_admin(username, email, password)
    return {
        "user_id": user.id,
        "email": user.email,
        "status": "promoted" if existing else "created",
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the user service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
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
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
