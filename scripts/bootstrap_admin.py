#!/usr/bin/env python3
"""Create the first super_admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Password1' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Password1'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (checked against the password policy)
    ADMIN_PHONE: Optional phone number for OTP login
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(
    email: str, password: str, phone: str | None = None, dry_run: bool = False
) -> dict:
    """Create an active, verified super_admin unless the email is already taken."""
    # Imported late so the environment below is in place before settings load
    from propauth.service.auth import normalize_email
    from propauth.service.otp import normalize_phone
    from propauth.service.runtime import get_runtime
    from propauth.storage.models import Role, User, UserStatus, utcnow

    runtime = get_runtime()
    auth = runtime.auth
    email = normalize_email(email)

    existing = runtime.store.get_user_by_email(email)
    if existing:
        if existing.role == Role.SUPER_ADMIN:
            print(f"User {email} already exists as super_admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        print(f"User {email} already exists with role {existing.role}; refusing to change it")
        return {"user_id": existing.id, "email": email, "status": "conflict"}

    auth.password_policy.validate(password)
    if dry_run:
        print(f"[DRY RUN] Would create super_admin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    now = utcnow()
    user = User.new(
        email=email,
        password_hash=await asyncio.to_thread(auth.hasher.hash, password),
        role=Role.SUPER_ADMIN,
        phone=normalize_phone(phone) if phone else None,
        status=UserStatus.ACTIVE,
        now=now,
    )
    user.email_verified = True
    user.phone_verified = bool(phone)
    runtime.store.create_user(user)
    print(f"Created super_admin: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super_admin user for PropAuth",
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
        "--phone",
        default=os.environ.get("ADMIN_PHONE"),
        help="Admin phone number (or set ADMIN_PHONE env var)",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/propauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # The script only talks to the credential directory
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("REDIS_URL", "")

    from propauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.phone, args.dry_run)
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        if exc.detail.get("problems"):
            for problem in exc.detail["problems"]:
                print(f"  - {problem}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nsuper_admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a super_admin.")
    elif result["status"] == "conflict":
        sys.exit(1)


if __name__ == "__main__":
    main()
