#!/usr/bin/env python3
"""Reap expired identity state once and exit.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... python scripts/cleanup_expired.py

    # Print what was removed as JSON:
    python scripts/cleanup_expired.py --json

Sweeps expired or used verification/reset tokens, expired pending OAuth
registrations, stale rate-limit rows, expired sessions and security log
entries past retention. Intended for cron when the HTTP app's background
maintenance loop is not running.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_cleanup() -> dict:
    # Import here so env overrides from the command line are picked up
    from identity_engine.service.runtime import Runtime

    runtime = Runtime()
    try:
        return await asyncio.to_thread(runtime.maintenance.run_once)
    finally:
        await runtime.close()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Delete expired tokens, sessions, rate limits and old audit entries",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--json", action="store_true", help="Print removal counts as JSON")
    args = parser.parse_args()

    try:
        removed = asyncio.run(run_cleanup())
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if args.json:
        print(json.dumps(removed, sort_keys=True))
    else:
        for name, count in removed.items():
            label = "failed" if count < 0 else str(count)
            print(f"  {name}: {label}")
    return 1 if any(count < 0 for count in removed.values()) else 0


if __name__ == "__main__":
    sys.exit(main())
