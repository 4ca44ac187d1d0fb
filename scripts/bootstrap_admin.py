#!/usr/bin/env python3
"""Create an administrator account, or promote an existing one.

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Sup3r-Secret-Pass'

ADMIN_EMAIL / ADMIN_PASSWORD may be used instead of the flags. Without
DATABASE_URL the in-memory store is used and throwaway secrets are generated;
with DATABASE_URL set, ENCRYPTION_KEY and JWT_SECRET must be provided.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import string
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 12
_CHARACTER_CLASSES = (
    string.ascii_uppercase,
    string.ascii_lowercase,
    string.digits,
    string.punctuation,
)


def strong_enough(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    used = sum(1 for chars in _CHARACTER_CLASSES if any(c in chars for c in password))
    return used >= 3


async def ensure_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # settings are read on first use, after main() has filled in the env
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    account = runtime.store.get_account_by_email(email)

    if account and account.role == "admin":
        return {"status": "unchanged", "account_id": account.id}
    if account:
        if not dry_run:
            runtime.store.update_account(account.id, role="admin")
        return {"status": "promoted", "account_id": account.id, "dry_run": dry_run}
    if dry_run:
        return {"status": "created", "account_id": None, "dry_run": True}

    result = await runtime.auth.register(email, password, role="admin")
    return {
        "status": "created",
        "account_id": result["user"]["id"],
        "access_token": result["access_token"],
    }


def _prepare_environment() -> None:
    if os.environ.get("DATABASE_URL"):
        return
    os.environ["USE_MEMORY_STORE"] = "true"
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("ENCRYPTION_KEY", secrets.token_urlsafe(48))
    print("Note: DATABASE_URL is not set, using the in-memory store")


def _report(email: str, result: dict) -> None:
    prefix = "[DRY RUN] would have " if result.get("dry_run") else ""
    if result["status"] == "unchanged":
        print(f"{email} is already an admin (id: {result['account_id']})")
    elif result["status"] == "promoted":
        print(f"{prefix}promoted {email} to admin (id: {result['account_id']})")
    else:
        print(f"{prefix}created admin account {email} (id: {result['account_id']})")
        if result.get("access_token"):
            print(f"  access token: {result['access_token'][:40]}...")


def main() -> int:
    parser = argparse.ArgumentParser(
        description=__doc__.splitlines()[0],
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        parser.error("--email and --password (or ADMIN_EMAIL / ADMIN_PASSWORD) are required")
    if not strong_enough(args.password):
        parser.error(
            f"password needs {MIN_PASSWORD_LENGTH}+ characters from at least three of: "
            "upper case, lower case, digits, punctuation"
        )

    _prepare_environment()
    try:
        result = asyncio.run(ensure_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    _report(args.email, result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
