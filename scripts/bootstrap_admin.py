#!/usr/bin/env python3
"""Create the first administrative account.

Usage:
    ADMIN_HANDLE=root ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Pass-123' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --handle root --email admin@example.com \
        --password 'Secure-Pass-123' --role super_admin

Environment Variables:
    ADMIN_HANDLE: Handle for the account
    ADMIN_EMAIL: Email for the account
    ADMIN_PASSWORD: Password (must satisfy the configured strength policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    handle: str, email: str, password: str, role: str = "admin", dry_run: bool = False
) -> dict:
    # Deferred so the environment defaults below are applied before settings load
    from authcore.service.errors import ServiceError
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_identifier(email)
    if existing:
        if role in existing.roles:
            print(f"Account {email} already holds role {role} (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        print(f"Account {email} exists without role {role}; refusing to modify it")
        return {"account_id": existing.id, "email": email, "status": "conflict"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} account: {handle} <{email}>")
        return {"account_id": None, "email": email, "status": "dry_run"}

    try:
        account = await runtime.auth.register(handle, email, password, roles=[role])
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return {"account_id": None, "email": email, "status": "failed", "error": exc.error_code}
    if account.status == "pending":
        runtime.auth.credentials.mark_email_verified(account.id)
    print(f"Created {role} account: {handle} <{email}> (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrative account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--handle", default=os.environ.get("ADMIN_HANDLE", "admin"))
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
    parser.add_argument("--role", choices=("admin", "super_admin"), default="admin")
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
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authcore-bootstrap")
        print("Note: Using the memory store (set DATABASE_URL for PostgreSQL)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    result = asyncio.run(
        bootstrap_admin(args.handle, args.email, args.password, args.role, args.dry_run)
    )
    if result["status"] in {"failed", "conflict"}:
        sys.exit(1)


if __name__ == "__main__":
    main()
