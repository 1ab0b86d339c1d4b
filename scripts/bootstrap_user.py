#!/usr/bin/env python3
"""Bootstrap a user with a password and role for testing and initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=admin@example.com BOOTSTRAP_PASSWORD=SecurePassword123! python scripts/bootstrap_user.py --role admin

    # Or with command line args:
    python scripts/bootstrap_user.py --email admin@example.com --password SecurePassword123! --role admin

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user (at least 8 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(
    email: str, password: str, role: str, permissions: list[str], dry_run: bool = False
) -> dict:
    """Create a user, or update the claims of an existing one.

    Returns:
        dict with uid, email, and status ('created', 'updated', 'unchanged' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatekeep.service.runtime import Runtime

    runtime = Runtime()
    try:
        return await _apply(runtime, email, password, role, permissions, dry_run)
    finally:
        await runtime.close()


async def _apply(runtime, email, password, role, permissions, dry_run):
    from gatekeep.service.errors import UserNotFoundError
    from gatekeep.storage.models import Claims

    claims = Claims(role=role, permissions=permissions)

    try:
        existing = runtime.directory.get_by_email(email)
    except UserNotFoundError:
        existing = None

    if existing:
        current = runtime.directory.get_claims(existing.id)
        if current and current.role == role and sorted(current.permissions) == sorted(permissions):
            print(f"User {email} already has role {role} (id: {existing.id})")
            return {"uid": existing.id, "email": email, "status": "unchanged"}
        if dry_run:
            print(f"[DRY RUN] Would set role {role} on existing user {email}")
            return {"uid": existing.id, "email": email, "status": "dry_run"}
        runtime.directory.set_claims(existing.id, claims)
        print(f"Updated claims of existing user {email} (id: {existing.id})")
        return {"uid": existing.id, "email": email, "status": "updated"}

    if dry_run:
        print(f"[DRY RUN] Would create user {email} with role {role}")
        return {"uid": None, "email": email, "status": "dry_run"}

    identity = await runtime.auth.register_user(
        email, password=password, claims=claims, email_verified=True
    )
    result = await runtime.auth.login(email, password)
    print(f"Created user: {email} (id: {identity.id})")
    return {
        "uid": identity.id,
        "email": email,
        "status": "created",
        "token": result.token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a gatekeep user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--role", default="admin", help="Role claim to assign")
    parser.add_argument(
        "--permission",
        action="append",
        default=[],
        dest="permissions",
        help="Permission claim to assign (repeatable)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/gatekeep-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_user(
                args.email, args.password, args.role, args.permissions, args.dry_run
            )
        )

        if result["status"] == "created":
            print("\nUser created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['uid']}")
            if result.get("token"):
                print(f"  Token: {result['token'][:50]}...")
        elif result["status"] == "updated":
            print("\nExisting user updated!")
        elif result["status"] == "unchanged":
            print("\nNo changes needed.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
