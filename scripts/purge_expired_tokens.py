#!/usr/bin/env python3
"""Delete expired email-verification and password-reset tokens.

The service never removes expired token rows on its own; run this from cron
or by hand to keep the token tables small.

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_expired_tokens.py

    # Only one table, and report without deleting:
    python scripts/purge_expired_tokens.py --kind reset --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to "true" to run against the in-memory store
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(store, kinds, *, dry_run: bool = False, now=None) -> dict:
    """Purge expired rows for each kind and return the per-kind counts."""
    from latchkey.storage.models import utcnow

    now = now or utcnow()
    counts = {}
    for kind in kinds:
        if dry_run:
            counts[kind.value] = store.count_expired_tokens(kind, now)
            print(f"[DRY RUN] Would purge {counts[kind.value]} expired rows from {kind.table}")
            continue
        counts[kind.value] = store.purge_expired_tokens(kind, now)
        print(f"Purged {counts[kind.value]} expired rows from {kind.table}")
    return counts


def main(argv=None):
    from latchkey.storage.models import TokenKind

    parser = argparse.ArgumentParser(
        description="Purge expired emailed tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--kind",
        choices=[kind.value for kind in TokenKind] + ["all"],
        default="all",
        help="Token table to purge (default: all)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    kinds = list(TokenKind) if args.kind == "all" else [TokenKind(args.kind)]

    from latchkey.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        try:
            purge(runtime.store, kinds, dry_run=args.dry_run)
        finally:
            asyncio.run(runtime.aclose())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
