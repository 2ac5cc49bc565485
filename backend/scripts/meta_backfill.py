#!/usr/bin/env python3
"""
Meta insights backfill CLI.

WHAT:
    Backfills one tenant's Meta insights history in chunks and prints the
    resulting backfill job.

USAGE:
    # Backfill Q1 2025 for a tenant (selected ad account)
    python scripts/meta_backfill.py --tenant <uuid> --since 2025-01-01 --until 2025-03-31

    # Specific ad account, smaller chunks, lower report concurrency
    python scripts/meta_backfill.py --tenant <uuid> --account act_123 \\
        --since 2024-01-01 --until 2024-12-31 --chunk-size 14 --concurrency 2

EXIT CODES:
    0 = backfill completed, 1 = backfill failed, 2 = bad arguments

REFERENCES:
    - backend/adsync/services/meta_backfill_service.py
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import date
from uuid import UUID

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backfill Meta insights for one tenant")
    parser.add_argument("--tenant", required=True, type=UUID, help="Tenant UUID")
    parser.add_argument("--account", default=None, help="Ad account id (default: tenant's selected account)")
    parser.add_argument("--since", required=True, type=date.fromisoformat, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--until", required=True, type=date.fromisoformat, help="End date (YYYY-MM-DD)")
    parser.add_argument("--chunk-size", type=int, default=None, help="Days per chunk (default: META_BACKFILL_CHUNK_DAYS)")
    parser.add_argument("--concurrency", type=int, default=None, help="Parallel report jobs per chunk")
    return parser


async def run(args: argparse.Namespace) -> int:
    from adsync.database import get_sync_session
    from adsync.deps import get_settings
    from adsync.models import BackfillStatusEnum
    from adsync.services.meta_backfill_service import run_backfill

    chunk_size = args.chunk_size or get_settings().META_BACKFILL_CHUNK_DAYS

    with get_sync_session() as db:
        job = await run_backfill(
            db,
            args.tenant,
            args.since,
            args.until,
            account_id=args.account,
            chunk_size_days=chunk_size,
            concurrency=args.concurrency,
        )
        print(f"Backfill job {job.id}: {job.status.value}")
        print(f"  chunks: {job.progress_completed}/{job.progress_total}")
        print(f"  rows:   {job.rows_inserted}")
        if job.error:
            print(f"  error:  {job.error}")
        return 0 if job.status == BackfillStatusEnum.completed else 1


def main() -> int:
    args = build_parser().parse_args()
    if args.since > args.until:
        logger.error("--since (%s) is after --until (%s)", args.since, args.until)
        return 2
    if args.chunk_size is not None and args.chunk_size < 1:
        logger.error("--chunk-size must be >= 1")
        return 2

    from adsync.telemetry import init_sentry
    init_sentry()

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
