"""Delete canceled subscriptions past the retention window."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from fitcore.config import get_settings
from fitcore.database import close_engine, get_session_factory

from api.services.retention_sweeper import SweepLockUnavailable, run_retention_sweep


async def sweep(*, retention_days: int, dry_run: bool) -> dict[str, Any]:
    settings = get_settings()
    try:
        return await run_retention_sweep(
            get_session_factory(),
            retention_days=retention_days,
            processed_event_retention_days=settings.processed_event_retention_days,
            dry_run=dry_run,
            trigger="cli",
        )
    finally:
        await close_engine()


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sweep canceled subscriptions.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List matching subscriptions without deleting them.",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override SUBSCRIPTION_RETENTION_DAYS (default: 30).",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    retention_days = (
        args.retention_days
        if args.retention_days is not None
        else settings.subscription_retention_days
    )
    dry_run = bool(args.dry_run or settings.sweeper_dry_run)
    try:
        summary = asyncio.run(sweep(retention_days=max(retention_days, 0), dry_run=dry_run))
    except SweepLockUnavailable:
        print("retention-sweep: another sweep is running; nothing done", file=sys.stderr)
        return 1
    print(
        "retention-sweep:",
        f"matched={summary['matched']}",
        f"deleted={summary['deleted']}",
        f"processed_events_pruned={summary['processed_events_pruned']}",
        "(dry-run)" if dry_run else "",
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
