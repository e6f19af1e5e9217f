#!/usr/bin/env python3
"""Set an account's password from the command line.

Usage:
    # Using environment variables:
    ACCOUNT_EMAIL=someone@example.com NEW_PASSWORD=SecurePassword123! python scripts/set_password.py

    # Or with command line args:
    python scripts/set_password.py --email someone@example.com --password SecurePassword123!

Environment Variables:
    ACCOUNT_EMAIL: Email of the account to update
    NEW_PASSWORD: The new password
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def set_password(email: str, password: str, dry_run: bool = False) -> dict:
    """Overwrite the password of the account registered under ``email``.

    Returns:
        dict with email, status ('updated', 'dry_run' or 'failed') and,
        on failure, the error code and message.
    """
    # Import here to avoid loading config before env vars are set
    from accountcore.service.outcomes import HTTP_STATUS
    from accountcore.service.runtime import get_runtime

    runtime = get_runtime()

    if dry_run:
        outcome = runtime.engine.admin_find_by_email(email)
        if not outcome.ok:
            return {"email": email, "status": "failed", "error": outcome.reason}
        print(f"[DRY RUN] Would set password for {email}")
        return {"email": email, "status": "dry_run"}

    outcome = runtime.engine.admin_set_password(email, password)
    if not outcome.ok:
        _, code = HTTP_STATUS[outcome.kind]
        return {"email": email, "status": "failed", "code": code, "error": outcome.reason}
    return {
        "email": email,
        "status": "updated",
        "account_id": outcome.payload["account"]["id"],
    }


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Set an account password for AccountCore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Account email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("NEW_PASSWORD"),
        help="New password (or set NEW_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Check the account exists without changing it",
    )

    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ACCOUNT_EMAIL environment variable required")
        return 1

    if not args.password and not args.dry_run:
        print("Error: --password or NEW_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    result = set_password(args.email, args.password or "", args.dry_run)

    if result["status"] == "failed":
        print(f"Error: {result['error']}")
        return 1
    if result["status"] == "updated":
        print(f"Password updated for {result['email']} (id: {result['account_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
