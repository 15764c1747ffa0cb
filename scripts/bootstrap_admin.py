#!/usr/bin/env python3
"""Create the first global admin in the control plane.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin
    ADMIN_PASSWORD: Password for the admin (12+ characters, 3+ character classes)
    FS_ROOT: Control-plane data root (default: data)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap a global admin for HelloJohn",
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
    parser.add_argument("--name", default="", help="Display name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    # Import here to avoid loading config before env vars are set
    from hellojohn.service.bootstrap import bootstrap_admin
    from hellojohn.service.errors import ServiceError
    from hellojohn.service.runtime import get_runtime
    from hellojohn.store.errors import StoreError

    runtime = get_runtime()
    try:
        result = bootstrap_admin(
            runtime.dal.control.admins,
            runtime.passwords,
            args.email,
            args.password,
            name=args.name,
            dry_run=args.dry_run,
        )
    except ServiceError as exc:
        detail = f" ({exc.detail})" if exc.detail else ""
        print(f"Error: {exc.message}{detail}")
        return 1
    except StoreError as exc:
        print(f"Error: {exc.message}")
        return 1

    if result["status"] == "dry_run":
        print(f"[DRY RUN] Would create admin: {result['email']}")
    else:
        print(f"Created admin: {result['email']} (id: {result['admin_id']})")
        print(f"Control plane: {runtime.settings.fs_root}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
