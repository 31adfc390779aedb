"""Webhook reconciliation state machine.

Each provider event is applied in a single transaction together with its
ProcessedEvent ledger row, so replays and concurrent deliveries collapse to one
effect. The provider is authoritative; this module only converges local rows
towards it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fitcore.models import Invoice, Subscription
from fitcore.models.subscription import ACTIVE_SET_STATUSES
from fitcore.services.plans import Plan, PlanCatalog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.billing_errors import InvalidRequest, ProviderUnavailable
from api.services.provider_objects import (
    ProviderSubscription,
    as_datetime,
    invoice_from_payload,
    invoice_subscription_ref,
    subscription_from_payload,
)
from api.services.stripe_service import StripeGateway
from api.services.subscription_store import StoreError, SubscriptionStore, run_in_transaction

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"
INVOICE_CREATED = "invoice.created"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_VOIDED = "invoice.voided"
INVOICE_UNCOLLECTIBLE = "invoice.marked_uncollectible"

EVENT_KIND_ALIASES = {
    "customer.subscription.created": SUBSCRIPTION_CREATED,
    "customer.subscription.updated": SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": INVOICE_PAID,
}
SUBSCRIPTION_KINDS = frozenset({SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED})
INVOICE_KINDS = frozenset(
    {INVOICE_CREATED, INVOICE_PAID, INVOICE_PAYMENT_FAILED, INVOICE_VOIDED, INVOICE_UNCOLLECTIBLE}
)
# Invoice status a given event moves the invoice to; None keeps the payload's status.
_INVOICE_TARGET_STATUS = {
    INVOICE_CREATED: "open",
    INVOICE_PAID: "paid",
    INVOICE_PAYMENT_FAILED: None,
    INVOICE_VOIDED: "void",
    INVOICE_UNCOLLECTIBLE: "uncollectible",
}

PROCESSED = "processed"
DUPLICATE = "duplicate"
STALE_SKIPPED = "stale_skipped"
IGNORED = "ignored"
ANOMALY = "anomaly"


class TransientReconcileError(Exception):
    """The event could not be committed; the provider should redeliver it.

    ``kind`` names the failing dependency using the error envelope codes.
    """

    def __init__(self, message: str, *, kind: str = "storage-error"):
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class ProviderEvent:
    event_id: str
    kind: str
    provider_type: str
    created_at: datetime
    payload: dict[str, Any]


def normalize_event_kind(provider_type: str) -> str:
    return EVENT_KIND_ALIASES.get(provider_type, provider_type)


def parse_event(envelope: dict[str, Any], *, received_at: datetime | None = None) -> ProviderEvent:
    """Extract id, kind, timestamp and object payload from a provider envelope."""
    event_id = str(envelope.get("id") or "").strip()
    provider_type = str(envelope.get("type") or "").strip()
    data = envelope.get("data")
    if not event_id or not provider_type:
        raise InvalidRequest("Invalid webhook payload")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise InvalidRequest("Invalid webhook payload")
    created_at = as_datetime(envelope.get("created")) or received_at or datetime.now(UTC)
    return ProviderEvent(
        event_id=event_id,
        kind=normalize_event_kind(provider_type),
        provider_type=provider_type,
        created_at=created_at,
        payload=data["object"],
    )


class Reconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        gateway: StripeGateway,
        *,
        billing_environment: str = "test",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._gateway = gateway
        self._billing_environment = billing_environment
        self._clock = clock or (lambda: datetime.now(UTC))

    async def apply(self, event: ProviderEvent) -> str:
        """Apply ``event`` once; returns the outcome label.

        Raises ``TransientReconcileError`` when nothing was committed.
        """
        fetched = None
        if event.kind in INVOICE_KINDS:
            fetched = await self._prefetch_unknown_subscription(event)

        try:
            outcome = await run_in_transaction(
                self._session_factory,
                lambda store: self._apply_once(store, event, fetched),
            )
        except (StoreError, SQLAlchemyError) as exc:
            logger.warning("Reconciling %s (%s) failed: %s", event.event_id, event.kind, exc)
            raise TransientReconcileError(str(exc)) from exc

        if outcome == DUPLICATE:
            logger.info("Duplicate provider event ignored: %s", event.event_id)
        else:
            logger.info("Provider event %s (%s): %s", event.event_id, event.kind, outcome)
        return outcome

    async def _prefetch_unknown_subscription(
        self, event: ProviderEvent
    ) -> ProviderSubscription | None:
        """Fetch the parent subscription of an invoice we cannot place locally.

        Runs outside the transaction so no storage work waits on provider I/O.
        """
        sub_ref = invoice_subscription_ref(event.payload)
        if not sub_ref:
            return None
        try:
            async with self._session_factory() as session:
                store = SubscriptionStore(session)
                if await store.has_processed_event(event.event_id):
                    return None
                if await store.get_by_provider_ref(sub_ref) is not None:
                    return None
        except SQLAlchemyError as exc:
            raise TransientReconcileError(str(exc)) from exc
        try:
            return await self._gateway.retrieve_subscription(sub_ref)
        except ProviderUnavailable as exc:
            raise TransientReconcileError(
                f"Cannot fetch subscription {sub_ref}", kind=ProviderUnavailable.kind
            ) from exc

    async def _apply_once(
        self,
        store: SubscriptionStore,
        event: ProviderEvent,
        fetched: ProviderSubscription | None,
    ) -> str:
        if await store.has_processed_event(event.event_id):
            return DUPLICATE

        if event.kind in SUBSCRIPTION_KINDS:
            outcome = await self._apply_subscription_event(store, event)
        elif event.kind in INVOICE_KINDS:
            outcome = await self._apply_invoice_event(store, event, fetched)
        else:
            outcome = IGNORED

        await store.record_processed_event(event.event_id, event.kind)
        return outcome

    def _anomaly(self, store: SubscriptionStore, event: ProviderEvent, reason: str, **extra) -> str:
        logger.warning(
            "Provider event %s (%s) not applied: %s %s", event.event_id, event.kind, reason, extra
        )
        store.audit(
            "webhook.anomaly",
            {"event_id": event.event_id, "kind": event.kind, "reason": reason, **extra},
        )
        return ANOMALY

    # Subscription lifecycle

    async def _apply_subscription_event(self, store: SubscriptionStore, event: ProviderEvent) -> str:
        try:
            snapshot = subscription_from_payload(event.payload)
        except ValueError:
            return self._anomaly(store, event, "malformed_subscription")

        sub = await store.get_by_provider_ref(snapshot.ref)
        if sub is None:
            return await self._adopt(store, event, snapshot)

        if event.kind == SUBSCRIPTION_DELETED:
            canceled_at = sub.canceled_at if sub.status == "canceled" else event.created_at
            await store.update(
                sub.id,
                {
                    "status": "canceled",
                    "canceled_at": canceled_at,
                    "cancel_at_period_end": False,
                    "last_event_id": event.event_id,
                    "provider_updated_at": _latest(sub.provider_updated_at, event.created_at),
                },
                expected_version=sub.version,
            )
            return PROCESSED

        if sub.provider_updated_at is not None and event.created_at < sub.provider_updated_at:
            logger.info(
                "Skipping out-of-order %s for %s (event %s older than %s)",
                event.kind,
                snapshot.ref,
                event.created_at.isoformat(),
                sub.provider_updated_at.isoformat(),
            )
            return STALE_SKIPPED

        patch = self._lifecycle_patch(sub, snapshot, event)
        next_status = patch["status"]
        if next_status in ACTIVE_SET_STATUSES and sub.status not in ACTIVE_SET_STATUSES:
            other = await store.get_active_for_user(sub.user_id)
            if other is not None and other.id != sub.id:
                return self._anomaly(
                    store,
                    event,
                    "already_active",
                    provider_subscription_ref=snapshot.ref,
                )
        await store.update(sub.id, patch, expected_version=sub.version)
        return PROCESSED

    def _lifecycle_patch(
        self,
        sub: Subscription,
        snapshot: ProviderSubscription,
        event: ProviderEvent,
    ) -> dict[str, Any]:
        status = snapshot.status or sub.status
        cancel_at_period_end = snapshot.cancel_at_period_end
        if status == "canceled":
            cancel_at_period_end = False
            canceled_at = sub.canceled_at or snapshot.canceled_at or event.created_at
        else:
            canceled_at = None
            if cancel_at_period_end:
                status = "cancel_pending"

        plan = self._catalog.by_price_ref(snapshot.price_ref) or self._catalog.lookup(sub.plan_id)
        start = snapshot.current_period_start or sub.current_period_start
        patch: dict[str, Any] = {
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "canceled_at": canceled_at,
            "current_period_start": start,
            "current_period_end": _period_end(plan, start, snapshot) if plan else sub.current_period_end,
            "last_event_id": event.event_id,
            "provider_updated_at": _latest(sub.provider_updated_at, event.created_at),
        }
        if plan is not None and plan.plan_id != sub.plan_id:
            patch.update(
                plan_id=plan.plan_id,
                provider_price_ref=plan.provider_price_ref,
                amount_cents=plan.unit_price_cents,
                currency=plan.currency,
            )
        return patch

    async def _adopt(
        self,
        store: SubscriptionStore,
        event: ProviderEvent,
        snapshot: ProviderSubscription,
    ) -> str:
        """Create a local row for a provider subscription we have never stored."""
        compensation = await store.get_open_compensation(snapshot.ref)

        plan = self._catalog.by_price_ref(snapshot.price_ref)
        if plan is None and compensation is not None:
            plan = self._catalog.lookup(compensation.plan_id)
        if plan is None:
            return self._anomaly(
                store, event, "unknown_price", provider_price_ref=snapshot.price_ref
            )

        user_id = await self._resolve_owner(store, snapshot, compensation)
        if not user_id:
            return self._anomaly(
                store, event, "owner_unresolved", provider_subscription_ref=snapshot.ref
            )

        if event.kind == SUBSCRIPTION_DELETED:
            status = "canceled"
        else:
            status = snapshot.status or "incomplete"
        cancel_at_period_end = snapshot.cancel_at_period_end and status != "canceled"
        if cancel_at_period_end:
            status = "cancel_pending"

        if status in ACTIVE_SET_STATUSES and await store.get_active_for_user(user_id) is not None:
            return self._anomaly(
                store, event, "already_active", provider_subscription_ref=snapshot.ref
            )

        start = snapshot.current_period_start or event.created_at
        canceled_at = None
        if status == "canceled":
            canceled_at = snapshot.canceled_at or event.created_at

        await store.insert(
            Subscription(
                user_id=user_id,
                plan_id=plan.plan_id,
                provider_subscription_ref=snapshot.ref,
                provider_customer_ref=snapshot.customer_ref,
                provider_price_ref=plan.provider_price_ref,
                status=status,
                current_period_start=start,
                current_period_end=_period_end(plan, start, snapshot),
                cancel_at_period_end=cancel_at_period_end,
                canceled_at=canceled_at,
                amount_cents=plan.unit_price_cents,
                currency=plan.currency,
                billing_environment=self._billing_environment,
                last_event_id=event.event_id,
                provider_updated_at=event.created_at,
            )
        )
        if compensation is not None:
            compensation.resolved_at = self._clock()
        logger.info("Adopted provider subscription %s for user %s", snapshot.ref, user_id)
        return PROCESSED

    async def _resolve_owner(
        self,
        store: SubscriptionStore,
        snapshot: ProviderSubscription,
        compensation,
    ) -> str | None:
        if compensation is not None:
            return compensation.user_id
        meta_user = str(snapshot.metadata.get("user_id") or "").strip()
        if meta_user:
            return meta_user
        if snapshot.customer_ref:
            customer = await store.get_customer_by_ref(snapshot.customer_ref)
            if customer is not None:
                return customer.user_id
        return None

    # Invoices

    async def _apply_invoice_event(
        self,
        store: SubscriptionStore,
        event: ProviderEvent,
        fetched: ProviderSubscription | None,
    ) -> str:
        try:
            payload_invoice = invoice_from_payload(event.payload)
        except ValueError:
            return self._anomaly(store, event, "malformed_invoice")
        if not payload_invoice.subscription_ref:
            return IGNORED

        sub = await store.get_by_provider_ref(payload_invoice.subscription_ref)
        if sub is None and fetched is not None:
            outcome = await self._adopt(store, event, fetched)
            if outcome != PROCESSED:
                return outcome
            sub = await store.get_by_provider_ref(payload_invoice.subscription_ref)
        if sub is None:
            return self._anomaly(
                store,
                event,
                "unknown_subscription",
                provider_subscription_ref=payload_invoice.subscription_ref,
            )

        target_status = _INVOICE_TARGET_STATUS[event.kind] or payload_invoice.status
        invoice, created = await store.append_invoice(
            Invoice(
                provider_invoice_ref=payload_invoice.ref,
                subscription_id=sub.id,
                amount_paid_cents=payload_invoice.amount_paid_cents,
                currency=payload_invoice.currency,
                status=target_status,
                issued_at=payload_invoice.issued_at or event.created_at,
                hosted_url=payload_invoice.hosted_url,
                pdf_url=payload_invoice.pdf_url,
            )
        )
        if not created:
            await store.advance_invoice(
                invoice,
                target_status,
                amount_paid_cents=payload_invoice.amount_paid_cents,
                hosted_url=payload_invoice.hosted_url,
                pdf_url=payload_invoice.pdf_url,
            )

        if event.kind == INVOICE_PAID and sub.status == "past_due":
            await store.update(
                sub.id,
                {"status": "active", "last_event_id": event.event_id},
                expected_version=sub.version,
            )
        elif event.kind == INVOICE_PAYMENT_FAILED and sub.status in ("trialing", "active"):
            await store.update(
                sub.id,
                {"status": "past_due", "last_event_id": event.event_id},
                expected_version=sub.version,
            )
        return PROCESSED


def _latest(current: datetime | None, candidate: datetime) -> datetime:
    if current is None or candidate > current:
        return candidate
    return current


def _period_end(plan: Plan, start: datetime, snapshot: ProviderSubscription) -> datetime:
    end = plan.period_end(start)
    reported = snapshot.current_period_end
    if reported is not None and reported != end:
        logger.warning(
            "Provider period end %s for %s differs from calendar end %s",
            reported.isoformat(),
            snapshot.ref,
            end.isoformat(),
        )
    return end
