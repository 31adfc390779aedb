"""Retention cleanup for canceled subscriptions and the processed-event ledger."""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

MIN_PROCESSED_EVENT_RETENTION_DAYS = 30
SWEEPER_LOCK_KEY = int(hashlib.sha256(b"fitcore.retention_sweeper").hexdigest()[:15], 16) % (2**31)


class SweepLockUnavailable(RuntimeError):
    """Another replica is already running the sweep."""


async def _acquire_sweep_lock(session: AsyncSession) -> None:
    """Take a transaction-scoped advisory lock on PostgreSQL.

    Other dialects have no advisory locks; there the sweep runs unguarded.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    result = await session.execute(
        text("SELECT pg_try_advisory_xact_lock(:key)"),
        {"key": SWEEPER_LOCK_KEY},
    )
    if not result.scalar():
        raise SweepLockUnavailable("Could not acquire advisory lock for retention sweep")


async def run_retention_sweep(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    retention_days: int = 30,
    processed_event_retention_days: int = 90,
    dry_run: bool = False,
    trigger: str = "manual",
    now: datetime | None = None,
) -> dict[str, Any]:
    current = now or datetime.now(UTC)
    cutoff = current - timedelta(days=max(0, int(retention_days)))
    event_cutoff = current - timedelta(
        days=max(MIN_PROCESSED_EVENT_RETENTION_DAYS, int(processed_event_retention_days))
    )

    async with session_factory() as session:
        async with session.begin():
            await _acquire_sweep_lock(session)
            store = SubscriptionStore(session)

            expired = await store.find_canceled_older_than(cutoff)
            expired_ids = [str(sub.id) for sub in expired]

            if dry_run:
                logger.info(
                    "Retention sweep dry run: %d canceled subscriptions older than %s: %s",
                    len(expired_ids),
                    cutoff.isoformat(),
                    ", ".join(expired_ids) or "-",
                )
                deleted = 0
                events_pruned = 0
            else:
                deleted = await store.delete_canceled_older_than(cutoff)
                events_pruned = await store.prune_processed_events(event_cutoff)
                logger.info(
                    "Retention sweep deleted %d canceled subscriptions and %d processed events",
                    deleted,
                    events_pruned,
                )

            summary = {
                "status": "ok",
                "trigger": trigger,
                "dry_run": dry_run,
                "ran_at": current.isoformat(),
                "cutoff": cutoff.isoformat(),
                "matched": len(expired_ids),
                "subscription_ids": expired_ids,
                "deleted": deleted,
                "processed_events_pruned": events_pruned,
            }
            if not dry_run:
                store.audit("retention.sweep", summary)
    return summary
