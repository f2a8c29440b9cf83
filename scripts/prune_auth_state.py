#!/usr/bin/env python3
"""Prune expired auth state: dead refresh tokens, spent verification/reset
artifacts and login attempts past the retention window.

Usage:
    # Report the cutoffs without deleting anything:
    python scripts/prune_auth_state.py --dry-run

    # Prune against the configured store:
    DATABASE_URL=postgresql://... python scripts/prune_auth_state.py

Environment Variables:
    JWT_ACCESS_SECRET / JWT_REFRESH_SECRET: required by settings validation
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE / AUTH_STATE_ROOT: prune a memory store snapshot instead
    LOGIN_ATTEMPT_RETENTION: how long login attempts are kept (default 30d)
"""
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def describe_cutoffs(now: datetime) -> dict:
    from kgotla.config import get_settings

    settings = get_settings()
    return {
        "refresh_tokens_before": now.isoformat(),
        "artifacts_before": now.isoformat(),
        "login_attempts_before": (now - settings.login_attempt_retention_delta).isoformat(),
    }


def prune(dry_run: bool = False) -> dict:
    # Import here so settings are read after argument parsing
    from kgotla.service.runtime import get_runtime

    now = datetime.now(timezone.utc)
    if dry_run:
        return {"status": "dry_run", **describe_cutoffs(now)}
    runtime = get_runtime()
    try:
        counts = runtime.auth.cleanup_expired_state()
    finally:
        runtime.close()
    return {"status": "pruned", **counts}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Prune expired Kgotla auth state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the cutoffs that would be used without deleting anything",
    )
    args = parser.parse_args(argv)

    try:
        result = prune(dry_run=args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "dry_run":
        print("[DRY RUN] Would prune:")
        print(f"  Refresh tokens expired or revoked before {result['refresh_tokens_before']}")
        print(f"  Artifacts expired or consumed before {result['artifacts_before']}")
        print(f"  Login attempts recorded before {result['login_attempts_before']}")
    else:
        print("Pruned auth state:")
        print(f"  Refresh tokens: {result['refresh_tokens']}")
        print(f"  Artifacts: {result['artifacts']}")
        print(f"  Login attempts: {result['login_attempts']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
