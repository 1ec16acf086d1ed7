#!/usr/bin/env python3
"""Create a user and check the stored hash against the given password.

Usage:
    # Using environment variables:
    NEW_USERNAME=alice NEW_PASSWORD='correct horse' python scripts/make_user.py

    # Or with command line args:
    python scripts/make_user.py alice --password 'correct horse'

Environment Variables:
    NEW_USERNAME: Username to create
    NEW_PASSWORD: Password for the new user (at least 8 characters)
    PASSWORD_PEPPER: Server-side pepper (required)
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


async def make_user(username: str, password: str, dry_run: bool = False) -> dict:
    """Create ``username`` and re-verify the password through a fresh lookup.

    Returns:
        dict with user_id, username, status and verified
    """
    # Import here to avoid loading config before env vars are set
    from credstore.service.errors import UserNotFound
    from credstore.service.runtime import get_runtime
    from credstore.storage.models import NewUser

    runtime = get_runtime()
    await runtime.start()
    try:
        try:
            existing = await runtime.users.find_user_by_username(username)
        except UserNotFound:
            existing = None
        if existing is not None:
            print(f"User {username} already exists (id: {existing.id})")
            return {"user_id": str(existing.id), "username": username, "status": "exists"}

        new_user = NewUser.new(username, password, username_type=runtime.username_type)
        if dry_run:
            print(f"[DRY RUN] Would create user: {new_user.username}")
            return {"user_id": None, "username": username, "status": "dry_run"}

        await runtime.users.create_user(new_user)
        user = await runtime.users.find_user_by_username(username)
        verified = runtime.strategy.verify_password(
            user.password_hash.get_secret_value(), password
        )
        print(f"Created user: {user.username} (id: {user.id})")
        return {
            "user_id": str(user.id),
            "username": str(user.username),
            "status": "created",
            "verified": verified,
        }
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create a credstore user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "username",
        nargs="?",
        default=os.environ.get("NEW_USERNAME"),
        help="Username (or set NEW_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("NEW_PASSWORD"),
        help="Password (or set NEW_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username:
        print("Error: username argument or NEW_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or NEW_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("PASSWORD_PEPPER"):
        print("Error: PASSWORD_PEPPER environment variable required")
        sys.exit(1)

    # Use memory stores if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SESSION_BACKEND", "memory")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from credstore.service.errors import CredstoreError

    try:
        result = asyncio.run(make_user(args.username, args.password, args.dry_run))
    except CredstoreError as e:
        print(f"Error: {e.safe_message()}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Password verifies: {result['verified']}")
        if not result["verified"]:
            sys.exit(2)


if __name__ == "__main__":
    main()
