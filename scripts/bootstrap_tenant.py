#!/usr/bin/env python3
"""Register a tenant with its main branch and owner account.

Usage:
    # Using environment variables:
    OWNER_PHONE=9876543210 OWNER_PASSWORD='Secure@Pass1' \
        python scripts/bootstrap_tenant.py --facility "City Clinic" --owner "Asha Rao"

    # Or with command line args:
    python scripts/bootstrap_tenant.py --facility "City Clinic" --owner "Asha Rao" \
        --phone 9876543210 --password 'Secure@Pass1'

Environment Variables:
    OWNER_PHONE: Ten digit mobile number of the owner
    OWNER_PASSWORD: Owner password (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import re
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

PHONE_RE = re.compile(r"^[6-9]\d{9}$")


async def bootstrap_tenant(
    facility: str,
    owner: str,
    phone: str,
    password: str,
    email: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the tenant unless the phone already belongs to an account.

    Returns:
        dict with tenant_id, user_id and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.find_user_by_phone(phone)
    if existing:
        print(f"Phone already registered to user {existing.id} (tenant {existing.tenant_id})")
        return {"tenant_id": existing.tenant_id, "user_id": existing.id, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would register tenant {facility!r} owned by {owner!r}")
        return {"tenant_id": None, "user_id": None, "status": "dry_run"}

    result = await runtime.accounts.register(facility, owner, phone, password, email=email)
    print(f"Created tenant {facility!r} (id: {result['tenant_id']})")
    return {**result, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Register a tenant and its owner account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--facility", required=True, help="Facility (tenant) name")
    parser.add_argument("--owner", required=True, help="Owner full name")
    parser.add_argument(
        "--phone",
        default=os.environ.get("OWNER_PHONE"),
        help="Owner phone (or set OWNER_PHONE env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("OWNER_PASSWORD"),
        help="Owner password (or set OWNER_PASSWORD env var)",
    )
    parser.add_argument("--email", default=None, help="Owner email (optional)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.phone or not PHONE_RE.match(args.phone):
        print("Error: --phone or OWNER_PHONE must be a 10 digit number starting with 6-9")
        return 1

    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        return 1

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_tenant(
                args.facility,
                args.owner,
                args.phone,
                args.password,
                email=args.email,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nTenant registered successfully!")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Owner user ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made - phone already has an account.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
