#!/usr/bin/env python3
"""Bootstrap the first admin identity.

Admin registration over HTTP requires an existing admin bearer token, so the
very first admin has to be created out of band with this script.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' \\
        python scripts/bootstrap_admin.py --phone 5551234567 \\
        --employee-id EMP-001 --department Operations

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PASSWORD: Password for the admin identity
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

BOOTSTRAP_ACTOR = "bootstrap"


async def bootstrap_admin(args: argparse.Namespace) -> dict:
    """Register an admin identity unless the email is already taken.

    Returns:
        dict with id, email, and status ('created', 'exists' or 'dry_run')
    """
    # deferred so env defaults set in main() apply before settings load
    from healthvia.service.registration import RegistrationRequest
    from healthvia.service.runtime import get_runtime
    from healthvia.storage.models import Role

    runtime = get_runtime()
    email = args.email.strip().lower()

    existing = runtime.auth.resolver.resolve(email)
    if existing is not None:
        print(f"Identity {email} already exists as {existing.role.value} (id: {existing.id})")
        return {"id": existing.id, "email": email, "status": "exists"}

    request = RegistrationRequest(
        role=Role.ADMIN,
        first_name=args.first_name,
        last_name=args.last_name,
        email=email,
        phone=args.phone,
        password=args.password,
        consent=True,
        profile={"employee_id": args.employee_id, "department": args.department},
    )
    if args.dry_run:
        runtime.auth.validator.validate(request)
        print(f"[DRY RUN] Would create admin identity: {email}")
        return {"id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(request, actor_id=BOOTSTRAP_ACTOR)
    print(f"Created admin identity: {email} (id: {result.id})")
    return {
        "id": result.id,
        "email": email,
        "status": "created",
        "access_token": result.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for HealthVia",
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
    parser.add_argument("--phone", required=True, help="Admin phone number")
    parser.add_argument("--first-name", default="System")
    parser.add_argument("--last-name", default="Administrator")
    parser.add_argument("--employee-id", required=True)
    parser.add_argument("--department", required=True)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and show what would be done without making changes",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  ID: {result['id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes made - the email is already registered.")


if __name__ == "__main__":
    main()
