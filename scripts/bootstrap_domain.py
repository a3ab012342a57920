#!/usr/bin/env python3
"""Bootstrap a tenant domain with an administrator account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_domain.py --name "Acme Corp" --slug acme

    # Or with command line args:
    python scripts/bootstrap_domain.py --name "Acme Corp" --slug acme \
        --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
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

ADMIN_PERMISSIONS = ["users:read", "users:write", "roles:manage"]


async def bootstrap_domain(
    name: str, slug: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Create a domain, its admin role and the first admin user.

    Returns:
        dict with domain_id, user_id, email, and status ('created' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tessera.service.credentials import validate_password_strength
    from tessera.service.runtime import get_runtime

    validate_password_strength(password)
    runtime = get_runtime()

    if dry_run:
        print(f"[DRY RUN] Would create domain {slug!r} with admin user {email}")
        return {"domain_id": None, "user_id": None, "email": email, "status": "dry_run"}

    domain = runtime.domains.create_domain(name, slug)
    role = runtime.rbac.create_role(
        domain.id, "admin", ADMIN_PERMISSIONS, description="Domain administrators"
    )
    user = await runtime.auth.register(domain.id, email, password)
    runtime.rbac.assign_role(domain.id, user.id, role.id)

    print(f"Created domain {slug} (id: {domain.id}) with admin {email} (id: {user.id})")
    return {
        "domain_id": domain.id,
        "user_id": user.id,
        "email": user.email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a Tessera domain and its administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", required=True, help="Display name of the domain")
    parser.add_argument("--slug", required=True, help="URL-safe domain slug")
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

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from tessera.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_domain(args.name, args.slug, args.email, args.password, args.dry_run)
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for problem in (exc.detail or {}).get("problems", []):
            print(f"       - {problem}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nDomain bootstrapped successfully!")
        print(f"  Domain ID: {result['domain_id']}")
        print(f"  Admin: {result['email']} ({result['user_id']})")


if __name__ == "__main__":
    main()
