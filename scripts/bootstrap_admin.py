#!/usr/bin/env python3
"""Grant the role administration permission to an existing identity.

Creates the admin permission (ROLE_ADMIN_PERMISSION, default "manage-roles")
and an "admin" role holding it when they are missing, then adds the role to
the identity.

Usage:
    # Using environment variables:
    ADMIN_IDENTITY=alice python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --identity alice@example.com --role admin

Environment Variables:
    ADMIN_IDENTITY: Name or email of the identity to promote
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis URL; permission caches of the identity are invalidated
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


async def bootstrap_admin(identifier: str, role_name: str = "admin", dry_run: bool = False) -> dict:
    """Ensure the admin role exists and holds the admin permission, then grant it.

    Returns:
        dict with identity_id, role_id and status ('granted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    admin_permission = runtime.settings.role_admin_permission

    identity = runtime.store.find_identity(identifier)
    if identity is None:
        raise LookupError(f"no identity named {identifier}")

    role = next((r for r in runtime.permissions.list_roles() if r.name == role_name), None)
    permission = next(
        (p for p in runtime.permissions.list_permissions() if p.name == admin_permission), None
    )

    resolved = await runtime.permissions.resolve(identity.id)
    if role_name in resolved.roles and admin_permission in resolved.permissions:
        print(f"Identity {identifier} already holds {role_name} (id: {identity.id})")
        return {"identity_id": identity.id, "role_id": role.id if role else None, "status": "already_admin"}

    if dry_run:
        if permission is None:
            print(f"[DRY RUN] Would create permission {admin_permission}")
        if role is None:
            print(f"[DRY RUN] Would create role {role_name} with {admin_permission}")
        print(f"[DRY RUN] Would add role {role_name} to {identifier}")
        return {"identity_id": identity.id, "role_id": role.id if role else None, "status": "dry_run"}

    if permission is None:
        permission = await runtime.permissions.create_permission(admin_permission)
        print(f"Created permission {admin_permission} (id: {permission.id})")

    if role is None:
        role = await runtime.permissions.create_role(role_name, [admin_permission])
        print(f"Created role {role_name} (id: {role.id})")
    elif admin_permission not in {p.name for p in role.permissions}:
        names = [p.name for p in role.permissions] + [admin_permission]
        role = await runtime.permissions.update_role(role.id, permission_names=names)
        print(f"Added {admin_permission} to role {role_name}")

    if role_name not in resolved.roles:
        await runtime.permissions.add_role_to_identity(identity.id, role.id)
    print(f"Granted {role_name} to {identifier} (id: {identity.id})")
    return {"identity_id": identity.id, "role_id": role.id, "status": "granted"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a role administrator for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identity",
        default=os.environ.get("ADMIN_IDENTITY"),
        help="Name or email of the identity (or set ADMIN_IDENTITY env var)",
    )
    parser.add_argument("--role", default="admin", help="Role to create and grant")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.identity:
        print("Error: --identity or ADMIN_IDENTITY environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required; the identity must already exist")
        sys.exit(1)

    # Jobs are not run from here
    os.environ.setdefault("JOB_PROCESSOR_ENABLED", "false")

    async def _run() -> dict:
        from warden.service.runtime import get_runtime

        try:
            return await bootstrap_admin(args.identity, args.role, args.dry_run)
        finally:
            await get_runtime().close()

    try:
        result = asyncio.run(_run())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "granted":
        print("\nRole administrator ready.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
