#!/usr/bin/env python3
"""Create the first administrator, or promote an existing account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Correct-Horse-42' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Correct-Horse-42'

Reads the same environment as the service (DATABASE_URL, REDIS_URL, JWT_SECRET,
SHARED_FS_ROOT). Without DATABASE_URL it falls back to the file-backed memory store.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # Imported late so the environment defaults below apply
    from keyward.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = runtime.store.get_user_by_email(email.strip().lower())
        if existing:
            if existing.role == "admin":
                return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
            if dry_run:
                return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
            runtime.store.update_user_role(existing.id, "admin")
            await runtime.audit.record(
                "role_changed",
                user_id=existing.id,
                details={"role": "admin", "source": "bootstrap"},
                suspicious=True,
            )
            return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

        if dry_run:
            return {"user_id": None, "email": email, "status": "dry_run"}
        user = await runtime.credentials.register(email, password, role="admin")
        await runtime.audit.record(
            "registered", user_id=user.id, details={"email": user.email, "role": "admin", "source": "bootstrap"}
        )
        return {"user_id": user.id, "email": user.email, "status": "created"}
    finally:
        await runtime.aclose()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Keyward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin email (or ADMIN_EMAIL)")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="Admin password (or ADMIN_PASSWORD)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
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
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/keyward")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed; user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
