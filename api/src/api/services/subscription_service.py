"""User-initiated subscription commands."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fitcore.models import Subscription
from fitcore.services.plans import PlanCatalog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.billing_errors import (
    AlreadySubscribed,
    BillingError,
    Forbidden,
    InvalidRequest,
    NotResumable,
    PlanUnknown,
    ProviderUnavailable,
    StorageFailure,
    SubscriptionNotFound,
)
from api.services.provider_objects import ProviderSubscription
from api.services.status_projector import project_status
from api.services.stripe_service import StripeGateway, derive_idempotency_key
from api.services.subscription_store import (
    ConflictError,
    StoreError,
    SubscriptionStore,
    run_in_transaction,
)

logger = logging.getLogger(__name__)

_PROVIDER_SUB_REF = re.compile(r"^sub_[A-Za-z0-9]{1,255}$")
_USER_ID = re.compile(r"^[A-Za-z0-9_\-:.@]{1,128}$")


@dataclass(frozen=True)
class Caller:
    """Authenticated principal issuing a command."""

    user_id: str
    email: str | None = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _require_well_formed_user(user_id: str) -> None:
    if not _USER_ID.match(user_id or ""):
        raise InvalidRequest("Malformed user id")


def _parse_subscription_ident(raw: str) -> uuid.UUID | str:
    """Accept either the internal UUID or the provider ref."""
    value = str(raw or "").strip()
    try:
        return uuid.UUID(value)
    except ValueError:
        pass
    if _PROVIDER_SUB_REF.match(value):
        return value
    raise InvalidRequest("Malformed subscription id")


class SubscriptionCommands:
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

    async def _transaction(self, work):
        try:
            return await run_in_transaction(self._session_factory, work)
        except BillingError:
            raise
        except (StoreError, SQLAlchemyError) as exc:
            logger.error("Subscription storage failure: %s", exc)
            raise StorageFailure() from exc

    async def _load_owned(self, caller: Caller, subscription_ident: str) -> Subscription:
        ident = _parse_subscription_ident(subscription_ident)

        async def load(store: SubscriptionStore) -> Subscription | None:
            if isinstance(ident, uuid.UUID):
                return await store.get_by_id(ident)
            return await store.get_by_provider_ref(ident)

        sub = await self._transaction(load)
        if sub is None:
            raise SubscriptionNotFound()
        if sub.user_id != caller.user_id and not caller.is_admin:
            raise Forbidden()
        return sub

    # Start

    async def start_subscription(
        self,
        caller: Caller,
        plan_id: str,
        payment_method_token: str | None,
        *,
        nonce: str | None = None,
    ) -> dict[str, Any]:
        _require_well_formed_user(caller.user_id)
        plan = self._catalog.lookup(plan_id)
        if plan is None:
            raise PlanUnknown(f"Unknown plan '{plan_id}'")

        async def precheck(store: SubscriptionStore):
            if await store.get_active_for_user(caller.user_id) is not None:
                raise AlreadySubscribed()
            # An unpaid create blocks another until the provider pays or expires it.
            if await store.get_incomplete_for_user(caller.user_id) is not None:
                raise AlreadySubscribed("A subscription is already awaiting payment confirmation")
            customer = await store.get_customer(caller.user_id)
            return customer.provider_customer_ref if customer else None

        existing_customer_ref = await self._transaction(precheck)
        customer_ref = await self._gateway.ensure_customer(
            caller.user_id, caller.email, existing_ref=existing_customer_ref
        )
        if existing_customer_ref is None:
            await self._transaction(
                lambda store: store.save_customer(caller.user_id, customer_ref, email=caller.email)
            )

        created = await self._gateway.create_subscription(
            customer_ref,
            plan.provider_price_ref,
            payment_method_token,
            user_id=caller.user_id,
            plan_id=plan.plan_id,
            idempotency_key=derive_idempotency_key(
                caller.user_id, "subscription.create", nonce or uuid.uuid4().hex
            ),
        )
        # Persist even if the client goes away now; the provider already holds the subscription.
        sub = await asyncio.shield(self._persist_created(caller, plan.plan_id, customer_ref, created))
        return {
            "subscriptionId": str(sub.id),
            "clientSecret": created.client_secret,
            "status": sub.status,
        }

    async def _persist_created(
        self,
        caller: Caller,
        plan_id: str,
        customer_ref: str,
        created: ProviderSubscription,
    ) -> Subscription:
        plan = self._catalog.lookup(plan_id)
        start = created.current_period_start or self._clock()
        status = created.status or "incomplete"

        async def insert(store: SubscriptionStore) -> Subscription:
            # The webhook may have adopted it first.
            adopted = await store.get_by_provider_ref(created.ref)
            if adopted is not None:
                return adopted
            return await store.insert(
                Subscription(
                    user_id=caller.user_id,
                    plan_id=plan.plan_id,
                    provider_subscription_ref=created.ref,
                    provider_customer_ref=customer_ref,
                    provider_price_ref=plan.provider_price_ref,
                    status=status,
                    current_period_start=start,
                    current_period_end=plan.period_end(start),
                    cancel_at_period_end=False,
                    canceled_at=None if status != "canceled" else self._clock(),
                    amount_cents=plan.unit_price_cents,
                    currency=plan.currency,
                    billing_environment=self._billing_environment,
                    last_event_id=None,
                )
            )

        try:
            return await run_in_transaction(self._session_factory, insert)
        except ConflictError as exc:
            await self._record_compensation(caller, plan_id, customer_ref, created, "conflict")
            raise AlreadySubscribed() from exc
        except (StoreError, SQLAlchemyError) as exc:
            await self._record_compensation(caller, plan_id, customer_ref, created, "storage_error")
            raise StorageFailure() from exc

    async def _record_compensation(
        self,
        caller: Caller,
        plan_id: str,
        customer_ref: str,
        created: ProviderSubscription,
        reason: str,
    ) -> None:
        async def record(store: SubscriptionStore) -> None:
            await store.add_compensation(
                provider_subscription_ref=created.ref,
                provider_customer_ref=customer_ref,
                user_id=caller.user_id,
                plan_id=plan_id,
                reason=reason,
            )
            store.audit(
                "subscription.compensation",
                {
                    "user_id": caller.user_id,
                    "provider_subscription_ref": created.ref,
                    "reason": reason,
                },
            )

        try:
            await run_in_transaction(self._session_factory, record, attempts=1)
        except (StoreError, SQLAlchemyError):
            logger.exception(
                "Could not record compensation for provider subscription %s (user %s)",
                created.ref,
                caller.user_id,
            )
            return
        logger.warning(
            "Provider subscription %s not persisted (%s); left for webhook adoption",
            created.ref,
            reason,
        )

    # Cancel / resume

    async def cancel_subscription(
        self,
        caller: Caller,
        subscription_ident: str,
        *,
        at_period_end: bool,
    ) -> dict[str, Any]:
        sub = await self._load_owned(caller, subscription_ident)
        if sub.status == "canceled":
            return project_status(sub, self._clock())
        if at_period_end and sub.status == "cancel_pending":
            return project_status(sub, self._clock())

        if at_period_end:
            await self._gateway.cancel_at_period_end(
                sub.provider_subscription_ref,
                idempotency_key=derive_idempotency_key(
                    sub.user_id, "subscription.cancel_at_period_end", f"{sub.id}:{sub.version}"
                ),
            )
            patch = {"cancel_at_period_end": True, "status": "cancel_pending"}
        else:
            canceled = await self._gateway.cancel_immediate(
                sub.provider_subscription_ref,
                idempotency_key=derive_idempotency_key(
                    sub.user_id, "subscription.cancel", str(sub.id)
                ),
            )
            patch = {
                "status": "canceled",
                "canceled_at": canceled.canceled_at or self._clock(),
                "cancel_at_period_end": False,
            }

        async def apply(store: SubscriptionStore) -> Subscription:
            current = await store.get_by_id(sub.id)
            if current is None:
                raise SubscriptionNotFound()
            if current.status == "canceled":
                return current
            return await store.update(current.id, patch, expected_version=current.version)

        updated = await self._transaction(apply)
        logger.info(
            "Subscription %s canceled by %s (at_period_end=%s)",
            sub.provider_subscription_ref,
            caller.user_id,
            at_period_end,
        )
        return project_status(updated, self._clock())

    async def resume_subscription(self, caller: Caller, subscription_ident: str) -> dict[str, Any]:
        sub = await self._load_owned(caller, subscription_ident)
        if not (sub.cancel_at_period_end and sub.status == "cancel_pending"):
            raise NotResumable()

        await self._gateway.resume(
            sub.provider_subscription_ref,
            idempotency_key=derive_idempotency_key(
                sub.user_id, "subscription.resume", f"{sub.id}:{sub.version}"
            ),
        )

        async def apply(store: SubscriptionStore) -> Subscription:
            current = await store.get_by_id(sub.id)
            if current is None:
                raise SubscriptionNotFound()
            if current.status != "cancel_pending":
                raise NotResumable()
            return await store.update(
                current.id,
                {"cancel_at_period_end": False, "status": "active"},
                expected_version=current.version,
            )

        updated = await self._transaction(apply)
        return project_status(updated, self._clock())

    # Reads

    async def get_current(self, caller: Caller) -> dict[str, Any]:
        _require_well_formed_user(caller.user_id)

        async def load(store: SubscriptionStore) -> Subscription | None:
            active = await store.get_active_for_user(caller.user_id)
            return active or await store.get_latest_for_user(caller.user_id)

        sub = await self._transaction(load)
        return project_status(sub, self._clock())

    async def list_invoices(self, caller: Caller, subscription_ident: str) -> list[dict[str, Any]]:
        sub = await self._load_owned(caller, subscription_ident)
        stored = await self._transaction(lambda store: store.list_invoices(sub.id))

        merged: dict[str, dict[str, Any]] = {
            invoice.provider_invoice_ref: {
                "providerInvoiceRef": invoice.provider_invoice_ref,
                "amountPaidCents": invoice.amount_paid_cents,
                "currency": invoice.currency,
                "status": invoice.status,
                "issuedAt": invoice.issued_at.isoformat(),
                "hostedUrl": invoice.hosted_url,
                "pdfUrl": invoice.pdf_url,
            }
            for invoice in stored
        }
        try:
            remote = await self._gateway.list_invoices(sub.provider_subscription_ref)
        except ProviderUnavailable:
            logger.warning(
                "Invoice list for %s served from store only", sub.provider_subscription_ref
            )
            remote = []

        for invoice in remote:
            entry = merged.get(invoice.ref)
            if entry is None:
                merged[invoice.ref] = invoice.to_dict()
                continue
            entry["hostedUrl"] = invoice.hosted_url or entry["hostedUrl"]
            entry["pdfUrl"] = invoice.pdf_url or entry["pdfUrl"]

        return sorted(merged.values(), key=lambda item: item["issuedAt"] or "", reverse=True)
