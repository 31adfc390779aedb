"""Periodic drift reconciliation against the provider.

Webhooks can be lost; subscriptions whose period has already ended while still
holding an active status are re-read from the provider and the snapshot is
applied through the reconciler like any other event.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.billing_errors import BillingError
from api.services.reconciler import (
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    ProviderEvent,
    Reconciler,
    TransientReconcileError,
)
from api.services.stripe_service import StripeGateway
from api.services.subscription_store import SubscriptionStore, run_in_transaction

logger = logging.getLogger(__name__)


async def run_billing_reconciliation(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: StripeGateway,
    reconciler: Reconciler,
    *,
    trigger: str = "manual",
    now: datetime | None = None,
) -> dict[str, Any]:
    started_at = now or datetime.now(UTC)

    async def load(store: SubscriptionStore):
        return await store.list_past_period_end(started_at)

    candidates = await run_in_transaction(session_factory, load)

    scanned = 0
    applied = 0
    missing = 0
    failures = 0
    for sub in candidates:
        scanned += 1
        ref = sub.provider_subscription_ref
        try:
            snapshot = await gateway.retrieve_subscription(ref)
        except BillingError as exc:
            failures += 1
            logger.warning("Billing reconciliation failed for %s: %s", ref, exc)
            continue
        if snapshot is None:
            missing += 1
            continue

        kind = SUBSCRIPTION_DELETED if snapshot.status == "canceled" else SUBSCRIPTION_UPDATED
        payload: dict[str, Any] = {
            "id": snapshot.ref,
            "status": snapshot.provider_status,
            "customer": snapshot.customer_ref,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "metadata": snapshot.metadata,
            "items": {"data": [{"price": {"id": snapshot.price_ref}}]},
        }
        for key, value in (
            ("current_period_start", snapshot.current_period_start),
            ("current_period_end", snapshot.current_period_end),
            ("canceled_at", snapshot.canceled_at),
        ):
            if value is not None:
                payload[key] = int(value.timestamp())

        event = ProviderEvent(
            event_id=f"reconcile:{ref}:{int(started_at.timestamp())}",
            kind=kind,
            provider_type=f"reconciliation.{kind}",
            created_at=started_at,
            payload=payload,
        )
        try:
            await reconciler.apply(event)
            applied += 1
        except TransientReconcileError:
            failures += 1

    summary = {
        "status": "ok",
        "trigger": trigger,
        "started_at": started_at.isoformat(),
        "finished_at": datetime.now(UTC).isoformat(),
        "scanned": scanned,
        "applied": applied,
        "missing": missing,
        "failures": failures,
    }

    async def audit(store: SubscriptionStore) -> None:
        store.audit("billing.reconciliation.run", summary)

    await run_in_transaction(session_factory, audit)
    logger.info("Billing reconciliation %s: %s", trigger, summary)
    return summary
