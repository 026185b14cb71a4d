#!/usr/bin/env python3
"""Grant a role to a subject as the system actor.

The first administrator cannot be created through the API (only admins may
change roles), so operators run this against the production store.

Usage:
    # Using environment variables:
    ADMIN_SUBJECT_ID=Xy12abcdEFgh34 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --subject-id Xy12abcdEFgh34 --role admin

Environment Variables:
    ADMIN_SUBJECT_ID: Identity-provider subject id to promote
    REDIS_URL: Store connection string (an in-memory store is used with --memory)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(subject_id: str, role: str = "admin", dry_run: bool = False) -> dict:
    """Create or update the user record for ``subject_id`` with ``role``.

    Returns:
        dict with subject_id, role, and status ('granted', 'already_granted' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from descgate.service.authorization import SYSTEM_ACTOR, normalize_role, validate_subject_id
    from descgate.service.runtime import get_runtime
    from descgate.storage.common import USERS

    subject_id = validate_subject_id(subject_id)
    role = normalize_role(role)
    runtime = get_runtime()

    existing = await runtime.store.get(USERS, subject_id)
    if existing and existing.get("role") == role:
        print(f"Subject {subject_id} already has role {role}")
        return {"subject_id": subject_id, "role": role, "status": "already_granted"}

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} {subject_id} with role {role}")
        return {"subject_id": subject_id, "role": role, "status": "dry_run"}

    try:
        record = await runtime.gate.update_user_role(SYSTEM_ACTOR, subject_id, role)
    finally:
        await runtime.close()
    print(f"Granted role {record.role} to {subject_id}")
    return {"subject_id": subject_id, "role": record.role, "status": "granted"}


def main():
    parser = argparse.ArgumentParser(
        description="Grant a role to a descgate subject",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--subject-id",
        default=os.environ.get("ADMIN_SUBJECT_ID"),
        help="Subject id (or set ADMIN_SUBJECT_ID env var)",
    )
    parser.add_argument("--role", default="admin", choices=["user", "admin", "system"])
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use an in-memory store (for trying the script out; nothing persists)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.subject_id:
        print("Error: --subject-id or ADMIN_SUBJECT_ID environment variable required")
        sys.exit(1)

    if args.memory:
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store; the grant is discarded on exit")

    try:
        result = asyncio.run(bootstrap_admin(args.subject_id, args.role, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "granted":
        print("\nRole granted successfully!")
    elif result["status"] == "already_granted":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
