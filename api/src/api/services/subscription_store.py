"""Persistence for subscriptions, invoices and the processed-event ledger."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from fitcore.models import (
    BillingEvent,
    Customer,
    Invoice,
    ProcessedEvent,
    Subscription,
    SubscriptionCompensation,
)
from fitcore.models.invoice import INVOICE_TRANSITIONS
from fitcore.models.subscription import ACTIVE_SET_STATUSES
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3

_PATCHABLE_FIELDS = frozenset(
    {
        "plan_id",
        "provider_customer_ref",
        "provider_price_ref",
        "status",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "canceled_at",
        "amount_cents",
        "currency",
        "last_event_id",
        "provider_updated_at",
    }
)


class StoreError(Exception):
    kind = "storage-error"


class ConflictError(StoreError):
    """A uniqueness rule (one active subscription, unique refs) was violated."""

    kind = "conflict"


class StaleError(StoreError):
    """Optimistic concurrency check failed."""

    kind = "stale"


class RecordNotFoundError(StoreError):
    kind = "not-found"


class SubscriptionStore:
    """Unit-of-work scoped accessor; the caller owns the transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def flush(self) -> None:
        try:
            await self.session.flush()
        except StaleDataError as exc:
            raise StaleError(str(exc)) from exc
        except IntegrityError as exc:
            raise ConflictError(str(exc.orig)) from exc

    # Subscriptions

    async def insert(self, sub: Subscription) -> Subscription:
        now = datetime.now(UTC)
        sub.created_at = sub.created_at or now
        sub.updated_at = now
        self.session.add(sub)
        await self.flush()
        return sub

    async def get_by_id(self, subscription_id: uuid.UUID) -> Subscription | None:
        return await self.session.get(Subscription, subscription_id)

    async def get_by_provider_ref(self, provider_ref: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription).where(Subscription.provider_subscription_ref == provider_ref)
        )
        return result.scalars().first()

    async def get_active_for_user(self, user_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.status.in_(ACTIVE_SET_STATUSES),
            )
        )
        return result.scalars().first()

    async def get_incomplete_for_user(self, user_id: str) -> Subscription | None:
        """Latest subscription still waiting on its first payment."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == "incomplete")
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def get_latest_for_user(self, user_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def update(
        self,
        subscription_id: uuid.UUID,
        patch: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Subscription:
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch subscription fields: {sorted(unknown)}")
        sub = await self.get_by_id(subscription_id)
        if sub is None:
            raise RecordNotFoundError(f"Subscription {subscription_id} not found")
        if expected_version is not None and sub.version != expected_version:
            raise StaleError(
                f"Subscription {subscription_id} is at version {sub.version}, "
                f"expected {expected_version}"
            )
        for key, value in patch.items():
            setattr(sub, key, value)
        sub.updated_at = datetime.now(UTC)
        await self.flush()
        return sub

    async def find_canceled_older_than(self, cutoff: datetime) -> list[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.status == "canceled",
                Subscription.canceled_at.is_not(None),
                Subscription.canceled_at <= cutoff,
            )
            .order_by(Subscription.canceled_at.asc())
        )
        return list(result.scalars().all())

    async def delete_canceled_older_than(self, cutoff: datetime) -> int:
        expired_ids = select(Subscription.id).where(
            Subscription.status == "canceled",
            Subscription.canceled_at.is_not(None),
            Subscription.canceled_at <= cutoff,
        )
        await self.session.execute(
            delete(Invoice)
            .where(Invoice.subscription_id.in_(expired_ids))
            .execution_options(synchronize_session=False)
        )
        deleted = (
            await self.session.execute(
                delete(Subscription)
                .where(
                    Subscription.status == "canceled",
                    Subscription.canceled_at.is_not(None),
                    Subscription.canceled_at <= cutoff,
                )
                .execution_options(synchronize_session=False)
            )
        ).rowcount
        return int(deleted or 0)

    async def list_past_period_end(self, now: datetime, *, limit: int = 200) -> list[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.status.in_(ACTIVE_SET_STATUSES),
                Subscription.current_period_end < now,
            )
            .order_by(Subscription.current_period_end.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # Invoices

    async def get_invoice(self, provider_invoice_ref: str) -> Invoice | None:
        result = await self.session.execute(
            select(Invoice).where(Invoice.provider_invoice_ref == provider_invoice_ref)
        )
        return result.scalars().first()

    async def append_invoice(self, invoice: Invoice) -> tuple[Invoice, bool]:
        """Insert ``invoice`` unless its provider ref is already stored."""
        existing = await self.get_invoice(invoice.provider_invoice_ref)
        if existing is not None:
            return existing, False
        now = datetime.now(UTC)
        invoice.created_at = now
        invoice.updated_at = now
        self.session.add(invoice)
        await self.flush()
        return invoice, True

    async def advance_invoice(
        self,
        invoice: Invoice,
        status: str,
        *,
        amount_paid_cents: int | None = None,
        hosted_url: str | None = None,
        pdf_url: str | None = None,
    ) -> bool:
        """Move ``invoice`` forward to ``status``; backward moves are ignored."""
        changed = False
        if status != invoice.status:
            if status not in INVOICE_TRANSITIONS.get(invoice.status, frozenset()):
                logger.info(
                    "Ignoring invoice %s transition %s -> %s",
                    invoice.provider_invoice_ref,
                    invoice.status,
                    status,
                )
            else:
                invoice.status = status
                changed = True
        if amount_paid_cents is not None and amount_paid_cents != invoice.amount_paid_cents:
            invoice.amount_paid_cents = amount_paid_cents
            changed = True
        if hosted_url and hosted_url != invoice.hosted_url:
            invoice.hosted_url = hosted_url
            changed = True
        if pdf_url and pdf_url != invoice.pdf_url:
            invoice.pdf_url = pdf_url
            changed = True
        if changed:
            invoice.updated_at = datetime.now(UTC)
            await self.flush()
        return changed

    async def list_invoices(self, subscription_id: uuid.UUID) -> list[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.subscription_id == subscription_id)
            .order_by(Invoice.issued_at.desc())
        )
        return list(result.scalars().all())

    # Processed-event ledger

    async def has_processed_event(self, provider_event_id: str) -> bool:
        result = await self.session.execute(
            select(ProcessedEvent.id).where(ProcessedEvent.provider_event_id == provider_event_id)
        )
        return result.scalars().first() is not None

    async def record_processed_event(self, provider_event_id: str, kind: str) -> bool:
        """Add ``provider_event_id`` to the ledger; False if it was already there."""
        if await self.has_processed_event(provider_event_id):
            return False
        self.session.add(
            ProcessedEvent(
                provider_event_id=provider_event_id,
                kind=kind,
                received_at=datetime.now(UTC),
            )
        )
        await self.flush()
        return True

    async def prune_processed_events(self, cutoff: datetime) -> int:
        deleted = (
            await self.session.execute(
                delete(ProcessedEvent)
                .where(ProcessedEvent.received_at < cutoff)
                .execution_options(synchronize_session=False)
            )
        ).rowcount
        return int(deleted or 0)

    # Customers

    async def get_customer(self, user_id: str) -> Customer | None:
        result = await self.session.execute(select(Customer).where(Customer.user_id == user_id))
        return result.scalars().first()

    async def get_customer_by_ref(self, provider_customer_ref: str) -> Customer | None:
        result = await self.session.execute(
            select(Customer).where(Customer.provider_customer_ref == provider_customer_ref)
        )
        return result.scalars().first()

    async def save_customer(
        self, user_id: str, provider_customer_ref: str, *, email: str | None = None
    ) -> Customer:
        existing = await self.get_customer(user_id)
        if existing is not None:
            return existing
        customer = Customer(
            user_id=user_id,
            email=email,
            provider_customer_ref=provider_customer_ref,
            created_at=datetime.now(UTC),
        )
        self.session.add(customer)
        await self.flush()
        return customer

    # Compensation records

    async def add_compensation(
        self,
        *,
        provider_subscription_ref: str,
        provider_customer_ref: str | None,
        user_id: str,
        plan_id: str,
        reason: str,
    ) -> SubscriptionCompensation:
        record = SubscriptionCompensation(
            provider_subscription_ref=provider_subscription_ref,
            provider_customer_ref=provider_customer_ref,
            user_id=user_id,
            plan_id=plan_id,
            reason=reason,
            created_at=datetime.now(UTC),
        )
        self.session.add(record)
        await self.flush()
        return record

    async def get_open_compensation(
        self, provider_subscription_ref: str
    ) -> SubscriptionCompensation | None:
        result = await self.session.execute(
            select(SubscriptionCompensation).where(
                SubscriptionCompensation.provider_subscription_ref == provider_subscription_ref,
                SubscriptionCompensation.resolved_at.is_(None),
            )
        )
        return result.scalars().first()

    # Audit trail

    def audit(self, event_type: str, metadata: dict[str, Any]) -> None:
        self.session.add(
            BillingEvent(
                event_type=event_type,
                metadata_json=metadata,
                created_at=datetime.now(UTC),
            )
        )


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[SubscriptionStore], Awaitable[T]],
    *,
    attempts: int = MAX_ATTEMPTS,
) -> T:
    """Run ``work`` in its own transaction, re-running it on stale or conflicting writes.

    Every attempt starts from a fresh session so ``work`` re-reads current state.
    """
    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as session:
                async with session.begin():
                    result = await work(SubscriptionStore(session))
            return result
        except (StaleError, ConflictError, StaleDataError, IntegrityError) as exc:
            if attempt >= attempts:
                if isinstance(exc, StaleDataError):
                    raise StaleError(str(exc)) from exc
                if isinstance(exc, IntegrityError):
                    raise ConflictError(str(exc.orig)) from exc
                raise
            logger.info("Retrying billing write after %s (attempt %d)", type(exc).__name__, attempt)
    raise AssertionError("unreachable")
