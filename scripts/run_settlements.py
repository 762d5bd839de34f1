#!/usr/bin/env python3
"""CLI entry point for settlement reconciliation and ad-spend collection.

Usage:
    # Reconcile settlements for every eligible connection
    PYTHONPATH=. python scripts/run_settlements.py

    # Also refresh campaign spend from Meta
    PYTHONPATH=. python scripts/run_settlements.py --ad-spend
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.clickmatch_core.sync.jobs import run_ad_spend_job, run_settlement_job


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
    parser = argparse.ArgumentParser(description="clickmatch settlement reconciliation")
    parser.add_argument("--user", type=str, help="Only reconcile this user's connections")
    parser.add_argument("--connection", type=str, help="Only reconcile this connection id")
    parser.add_argument(
        "--ad-spend",
        action="store_true",
        help="Also collect campaign spend from Meta",
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

    summary = await run_settlement_job(
        user_id=args.user, connection_id=args.connection, db_path=args.db
    )
    print(json.dumps(summary.to_dict(), indent=2))

    if args.ad_spend:
        spend_summary = await run_ad_spend_job(db_path=args.db)
        print(json.dumps(spend_summary.to_dict(), indent=2))


if __name__ == "__main__":
    asyncio.run(main())
