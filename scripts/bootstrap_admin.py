#!/usr/bin/env python3
"""Create the first admin account, or promote an existing account to admin.

The admin routes require an admin caller, so the first one has to be made
out of band.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --username admin \
        --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: account details
    DATABASE_URL, REDIS_URL: backends (see murmur.config.Settings)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(runtime, email: str, username: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote the admin account.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == "admin":
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.auth.set_user_role(existing.id, "admin")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.signup(
        name=username, username=username, email=email, password=password
    )
    await runtime.auth.set_user_role(result.user.id, "admin")
    return {
        "user_id": result.user.id,
        "email": email,
        "status": "created",
        "verification_email_sent": result.verification_email_sent,
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Murmur",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email and --password (or ADMIN_EMAIL / ADMIN_PASSWORD) are required")
        sys.exit(1)
    if len(args.password) < 8:
        print("Error: password must be at least 8 characters")
        sys.exit(1)

    from murmur.config import Settings
    from murmur.service.errors import ServiceError
    from murmur.service.runtime import Runtime

    runtime = Runtime(Settings.from_env())

    async def _run() -> dict:
        try:
            return await bootstrap_admin(
                runtime, args.email, args.username, args.password, args.dry_run
            )
        finally:
            await runtime.close()

    try:
        result = asyncio.run(_run())
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
