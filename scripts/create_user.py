#!/usr/bin/env python3
"""Create a user account, e.g. the first one on a fresh deployment.

Usage:
    # Using environment variables:
    NEW_USER_EMAIL=ops@example.com NEW_USER_PASSWORD=changeme python scripts/create_user.py --name "Ops"

    # Or with command line args:
    python scripts/create_user.py --email ops@example.com --password changeme --name "Ops"

Environment Variables:
    NEW_USER_EMAIL: Email for the new user
    NEW_USER_PASSWORD: Password for the new user
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


async def create_user(
    email: str,
    password: str,
    display_name: str,
    *,
    must_change_password: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the user unless the email is taken.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessionauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = runtime.store.find_user_by_email(email)
        if existing:
            print(f"User {email} already exists (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user = await runtime.users.create_user(
            email=email,
            display_name=display_name,
            password=password,
            must_change_password=must_change_password,
        )
        print(f"Created user: {user.email} (id: {user.id})")
        return {"user_id": user.id, "email": user.email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create a session auth user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("NEW_USER_EMAIL"),
        help="User email (or set NEW_USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("NEW_USER_PASSWORD"),
        help="User password (or set NEW_USER_PASSWORD env var)",
    )
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument(
        "--must-change-password",
        action="store_true",
        help="Flag the account so the client forces a password change",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or NEW_USER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or NEW_USER_PASSWORD environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("MEMORY_STORE_ROOT", "/tmp/sessionauth")
        print("Note: Using in-memory store snapshotted under MEMORY_STORE_ROOT")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from sessionauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            create_user(
                args.email,
                args.password,
                args.name,
                must_change_password=args.must_change_password,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
