#!/usr/bin/env python3
"""CLI entry point for order sync.

Usage:
    # Sync every connection (last 7 days)
    PYTHONPATH=. python scripts/run_order_sync.py

    # Sync one user's connections over a longer window
    PYTHONPATH=. python scripts/run_order_sync.py --user user_1 --days 30

    # Sync a single connection
    PYTHONPATH=. python scripts/run_order_sync.py --connection conn_naver_1
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.clickmatch_core.sync.jobs import run_order_sync_job


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="clickmatch order sync")
    parser.add_argument("--user", type=str, help="Only sync this user's connections")
    parser.add_argument("--connection", type=str, help="Only sync this connection id")
    parser.add_argument(
        "--days",
        type=int,
        help="Lookback window in days (default: CLICKMATCH_SYNC_LOOKBACK_DAYS or 7)",
    )
    parser.add_argument("--db", type=str, help="SQLite path (default: CLICKMATCH_DB_PATH)")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)

    summary = await run_order_sync_job(
        user_id=args.user,
        connection_id=args.connection,
        lookback_days=args.days,
        db_path=args.db,
    )
    print(json.dumps(summary.to_dict(), indent=2))


if __name__ == "__main__":
    asyncio.run(main())
