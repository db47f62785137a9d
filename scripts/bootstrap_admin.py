#!/usr/bin/env python3
"""Bootstrap an admin identity for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Sup3r!Secret' ADMIN_NAME='Site Admin' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Sup3r!Secret'

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PASSWORD: Password for the admin identity (must satisfy the password policy)
    ADMIN_NAME: Display name (defaults to "Administrator")
    DATABASE_URL: PostgreSQL connection string (optional, uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(name: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin identity, or promote the existing one with that email.

    Returns:
        dict with identity_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from authkernel.service.runtime import get_runtime
    from authkernel.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.get_identity_by_email(email)

    if existing:
        if existing.role == Role.ADMIN:
            print(f"{email} is already an admin (id: {existing.id})")
            return {"identity_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to admin")
            return {"identity_id": existing.id, "email": email, "status": "dry_run"}
        result = await runtime.auth.set_identity_role(existing.id, Role.ADMIN)
        if not result.ok:
            raise RuntimeError(result.message)
        print(f"Promoted {email} to admin (id: {existing.id})")
        return {"identity_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {email}")
        return {"identity_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(name, email, password, role=Role.ADMIN)
    if not result.ok:
        reasons = result.detail.get("reasons") if result.detail else None
        raise RuntimeError("; ".join(reasons) if reasons else result.message)
    grant = result.value
    print(f"Created admin identity: {email} (id: {grant.identity.id})")
    return {"identity_id": grant.identity.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for authkernel",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Admin display name (or set ADMIN_NAME env var)",
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
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.name, args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - identity is already an admin.")


if __name__ == "__main__":
    main()
