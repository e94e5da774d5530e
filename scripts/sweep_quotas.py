#!/usr/bin/env python3
"""Reset every expired token-quota period once.

Usage:
    python scripts/sweep_quotas.py
    python scripts/sweep_quotas.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: use the in-memory store instead (development only)

Exit status is 0 when the sweep completed (even if individual users failed)
and 1 when it could not run.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def sweep(dry_run: bool = False) -> int:
    """Run one sweep and return the number of periods reset (or due, for a dry run)."""
    # Import here to avoid loading config before env vars are set
    from gallerycore.service.runtime import get_runtime
    from gallerycore.storage.models import utcnow

    runtime = get_runtime()
    if dry_run:
        due = runtime.store.list_expired_quota_usage(utcnow())
        print(f"[DRY RUN] {len(due)} quota period(s) due for reset")
        return len(due)
    reset = runtime.quota.sweep_expired()
    print(f"Reset {reset} quota period(s)")
    return reset


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reset expired token-quota periods")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report how many periods are due without resetting them",
    )
    args = parser.parse_args(argv)
    try:
        sweep(dry_run=args.dry_run)
    except Exception as exc:
        print(f"Quota sweep failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
