"""Background maintenance loop (retention sweep + drift reconciliation)."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from fitcore.config import get_settings
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.billing_reconciliation import run_billing_reconciliation
from api.services.reconciler import Reconciler
from api.services.retention_sweeper import SweepLockUnavailable, run_retention_sweep
from api.services.stripe_service import StripeGateway

logger = logging.getLogger(__name__)


def parse_schedule(schedule: str) -> tuple[int, int, int | None]:
    """Parse a cron expression: ``M H * * *`` (daily) or ``M H * * DOW`` (weekly).

    Returns ``(hour, minute, day_of_week)`` where *day_of_week* is ISO
    (0=Monday … 6=Sunday) or ``None`` for daily schedules.

    Cron DOW convention: 0 and 7 both mean Sunday.
    """
    parts = schedule.split()
    if len(parts) != 5:
        raise ValueError(f"Unsupported schedule '{schedule}'. Expected 'M H * * DOW' or 'M H * * *'.")
    minute_str, hour_str, dom, month, dow_str = parts
    if dom != "*" or month != "*":
        raise ValueError(f"Unsupported schedule '{schedule}'. Only daily/weekly schedules are supported.")

    minute = int(minute_str)
    hour = int(hour_str)
    if minute < 0 or minute > 59 or hour < 0 or hour > 23:
        raise ValueError(f"Invalid schedule '{schedule}'.")

    if dow_str == "*":
        return hour, minute, None

    dow_cron = int(dow_str)
    if dow_cron < 0 or dow_cron > 7:
        raise ValueError(f"Invalid day-of-week '{dow_str}' in schedule '{schedule}'.")
    dow_iso = 6 if dow_cron in (0, 7) else dow_cron - 1
    return hour, minute, dow_iso


def next_run(now: datetime, hour: int, minute: int, day_of_week: int | None) -> datetime:
    """Next time strictly after ``now`` matching the schedule."""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if day_of_week is None:
        if target <= now:
            target += timedelta(days=1)
        return target

    days_ahead = (day_of_week - target.weekday()) % 7
    target += timedelta(days=days_ahead)
    if target <= now:
        target += timedelta(weeks=1)
    return target


async def run_maintenance_worker(
    stop_event: asyncio.Event,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: StripeGateway,
    reconciler: Reconciler,
    poll_interval_seconds: float = 300.0,
) -> None:
    settings = get_settings()
    hour, minute, day_of_week = parse_schedule(settings.sweeper_cron)
    reconcile_interval = timedelta(
        hours=max(1, int(settings.billing_reconciliation_interval_hours))
    )
    next_sweep_at = next_run(datetime.now(UTC), hour, minute, day_of_week)
    last_reconcile_at: datetime | None = None

    logger.info("Maintenance worker started; next retention sweep at %s", next_sweep_at.isoformat())
    try:
        while not stop_event.is_set():
            now = datetime.now(UTC)

            if now >= next_sweep_at:
                try:
                    await run_retention_sweep(
                        session_factory,
                        retention_days=settings.subscription_retention_days,
                        processed_event_retention_days=settings.processed_event_retention_days,
                        dry_run=settings.sweeper_dry_run,
                        trigger="scheduled",
                    )
                except SweepLockUnavailable:
                    logger.info("Retention sweep already running elsewhere; skipping")
                except Exception:
                    logger.exception("Scheduled retention sweep failed")
                next_sweep_at = next_run(datetime.now(UTC), hour, minute, day_of_week)

            if last_reconcile_at is None or (now - last_reconcile_at) >= reconcile_interval:
                try:
                    await run_billing_reconciliation(
                        session_factory, gateway, reconciler, trigger="scheduled"
                    )
                except Exception:
                    logger.exception("Scheduled billing reconciliation failed")
                last_reconcile_at = datetime.now(UTC)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_seconds)
            except TimeoutError:
                pass
    finally:
        logger.info("Maintenance worker stopped")
