"""Tests for user-initiated subscription commands."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from api.services.billing_errors import (
    AlreadySubscribed,
    Forbidden,
    InvalidRequest,
    NotResumable,
    PlanUnknown,
    ProviderUnavailable,
    StorageFailure,
    SubscriptionNotFound,
)
from api.services.provider_objects import ProviderInvoice
from api.services.reconciler import PROCESSED, parse_event
from api.services.subscription_service import Caller
from api.services.subscription_store import StoreError, SubscriptionStore
from fitcore.models import BillingEvent, Subscription, SubscriptionCompensation
from sqlalchemy import select


async def _load(session_factory, ref: str):
    async with session_factory() as session:
        return await SubscriptionStore(session).get_by_provider_ref(ref)


@pytest.mark.asyncio
async def test_start_subscription_persists_incomplete_row(commands, gateway, session_factory, caller):
    result = await commands.start_subscription(caller, "1-month", "pm_card_visa", nonce="n-1")

    assert result["status"] == "incomplete"
    assert result["clientSecret"] == "pi_1_secret_fake"

    sub = await _load(session_factory, "sub_Fake0001")
    assert str(sub.id) == result["subscriptionId"]
    assert sub.user_id == "user-1"
    assert sub.provider_customer_ref == "cus_user-1"
    assert sub.current_period_end == datetime(2026, 2, 28, 12, 0, tzinfo=UTC)
    assert sub.cancel_at_period_end is False

    async with session_factory() as session:
        customer = await SubscriptionStore(session).get_customer("user-1")
    assert customer.provider_customer_ref == "cus_user-1"


@pytest.mark.asyncio
async def test_idempotency_key_is_scoped_to_user(commands, gateway, caller):
    await commands.start_subscription(caller, "1-month", None, nonce="retry-me")
    other = Caller(user_id="user-2")
    await commands.start_subscription(other, "1-month", None, nonce="retry-me")

    keys = [kwargs["idempotency_key"] for name, kwargs in gateway.calls if name == "create_subscription"]
    assert keys[0] != keys[1]
    assert len(keys[0]) == 64


@pytest.mark.asyncio
async def test_start_rejects_unknown_plan_before_provider(commands, gateway, caller):
    with pytest.raises(PlanUnknown):
        await commands.start_subscription(caller, "2-week", None)
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_start_rejects_second_active_before_provider(
    commands, gateway, caller, seed_subscription
):
    await seed_subscription(status="past_due")

    with pytest.raises(AlreadySubscribed):
        await commands.start_subscription(caller, "3-month", None)
    assert gateway.call_count("create_subscription") == 0


@pytest.mark.asyncio
async def test_start_rejects_while_previous_create_awaits_payment(
    commands, gateway, caller, session_factory
):
    await commands.start_subscription(caller, "1-month", None, nonce="first")

    with pytest.raises(AlreadySubscribed):
        await commands.start_subscription(caller, "12-month", None, nonce="second")

    assert gateway.call_count("create_subscription") == 1
    async with session_factory() as session:
        pending = await SubscriptionStore(session).get_incomplete_for_user("user-1")
    assert pending.provider_subscription_ref == "sub_Fake0001"


@pytest.mark.asyncio
async def test_start_allowed_again_once_previous_attempt_expired(
    commands, gateway, caller, seed_subscription
):
    await seed_subscription(status="canceled", ref="sub_expired")

    result = await commands.start_subscription(caller, "1-month", None)

    assert result["status"] == "incomplete"
    assert gateway.call_count("create_subscription") == 1


@pytest.mark.asyncio
async def test_create_then_webhook_converges_to_one_row(
    commands, reconciler, caller, session_factory, subscription_event, now
):
    result = await commands.start_subscription(caller, "1-month", None)

    event = parse_event(
        subscription_event(
            "evt_created_after_insert",
            "customer.subscription.created",
            "sub_Fake0001",
            status="incomplete",
            created=now + timedelta(seconds=5),
            period_start=now,
        )
    )
    assert await reconciler.apply(event) == PROCESSED

    async with session_factory() as session:
        rows = (await session.execute(select(Subscription))).scalars().all()
    assert len(rows) == 1
    assert str(rows[0].id) == result["subscriptionId"]
    assert rows[0].provider_updated_at == now + timedelta(seconds=5)
    assert rows[0].last_event_id == "evt_created_after_insert"


@pytest.mark.asyncio
async def test_start_rejects_malformed_user(commands):
    with pytest.raises(InvalidRequest):
        await commands.start_subscription(Caller(user_id="bad user id"), "1-month", None)


@pytest.mark.asyncio
async def test_start_with_provider_down_stores_nothing(commands, gateway, caller, session_factory):
    gateway.unavailable = True

    with pytest.raises(ProviderUnavailable):
        await commands.start_subscription(caller, "1-month", None)

    async with session_factory() as session:
        assert await SubscriptionStore(session).get_latest_for_user("user-1") is None


@pytest.mark.asyncio
async def test_storage_failure_after_provider_create_leaves_compensation(
    commands, reconciler, session_factory, caller, subscription_event
):
    with patch.object(SubscriptionStore, "insert", side_effect=StoreError("disk full")):
        with pytest.raises(StorageFailure):
            await commands.start_subscription(caller, "6-month", None)

    async with session_factory() as session:
        record = (await session.execute(select(SubscriptionCompensation))).scalars().one()
        audit = (await session.execute(select(BillingEvent.event_type))).scalars().all()
    assert record.provider_subscription_ref == "sub_Fake0001"
    assert record.reason == "storage_error"
    assert "subscription.compensation" in audit

    # The provider's own event later adopts the orphan.
    event = parse_event(
        subscription_event(
            "evt_late",
            "customer.subscription.created",
            "sub_Fake0001",
            status="incomplete",
            price_ref="price_half",
            metadata={},
            customer="cus_user-1",
        )
    )
    assert await reconciler.apply(event) == PROCESSED
    sub = await _load(session_factory, "sub_Fake0001")
    assert sub.user_id == "user-1"
    assert sub.plan_id == "6-month"


@pytest.mark.asyncio
async def test_start_returns_row_already_adopted_by_webhook(
    commands, gateway, session_factory, caller, seed_subscription, now
):
    original_create = gateway.create_subscription

    async def create_then_adopt(*args, **kwargs):
        created = await original_create(*args, **kwargs)
        await seed_subscription(status="incomplete", ref=created.ref, start=now)
        return created

    gateway.create_subscription = create_then_adopt
    result = await commands.start_subscription(caller, "1-month", None)

    sub = await _load(session_factory, "sub_Fake0001")
    assert result["subscriptionId"] == str(sub.id)


@pytest.mark.asyncio
async def test_cancel_at_period_end_is_idempotent(commands, gateway, caller, seed_subscription):
    sub = await seed_subscription(status="active")

    first = await commands.cancel_subscription(caller, str(sub.id), at_period_end=True)
    second = await commands.cancel_subscription(caller, str(sub.id), at_period_end=True)

    assert first["status"] == "cancel_pending"
    assert first["cancelAtPeriodEnd"] is True
    assert first["hasActiveSubscription"] is True
    assert second == first
    assert gateway.call_count("cancel_at_period_end") == 1


@pytest.mark.asyncio
async def test_cancel_immediately(commands, gateway, caller, seed_subscription, session_factory):
    sub = await seed_subscription(status="active")

    result = await commands.cancel_subscription(
        caller, sub.provider_subscription_ref, at_period_end=False
    )

    assert result["status"] == "canceled"
    assert result["hasActiveSubscription"] is False
    stored = await _load(session_factory, sub.provider_subscription_ref)
    assert stored.canceled_at is not None
    assert stored.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_cancel_of_canceled_subscription_is_a_noop(commands, gateway, caller, seed_subscription):
    sub = await seed_subscription(status="canceled")

    result = await commands.cancel_subscription(caller, str(sub.id), at_period_end=False)

    assert result["status"] == "canceled"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_cancel_enforces_ownership(commands, seed_subscription):
    sub = await seed_subscription(user_id="user-2")

    with pytest.raises(Forbidden):
        await commands.cancel_subscription(Caller(user_id="user-1"), str(sub.id), at_period_end=True)

    result = await commands.cancel_subscription(
        Caller(user_id="support-1", role="admin"), str(sub.id), at_period_end=True
    )
    assert result["status"] == "cancel_pending"


@pytest.mark.asyncio
async def test_cancel_unknown_and_malformed_ids(commands, caller):
    with pytest.raises(SubscriptionNotFound):
        await commands.cancel_subscription(
            caller, "7a0c59c4-2d6f-4a36-8f0e-3f5bb8a3f0aa", at_period_end=True
        )
    with pytest.raises(InvalidRequest):
        await commands.cancel_subscription(caller, "not an id", at_period_end=True)


@pytest.mark.asyncio
async def test_resume_clears_pending_cancellation(commands, gateway, caller, seed_subscription):
    sub = await seed_subscription(status="cancel_pending")

    result = await commands.resume_subscription(caller, str(sub.id))

    assert result["status"] == "active"
    assert result["cancelAtPeriodEnd"] is False
    assert gateway.call_count("resume") == 1


@pytest.mark.asyncio
async def test_resume_requires_pending_cancellation(commands, gateway, caller, seed_subscription):
    sub = await seed_subscription(status="active")

    with pytest.raises(NotResumable):
        await commands.resume_subscription(caller, str(sub.id))
    assert gateway.call_count("resume") == 0


@pytest.mark.asyncio
async def test_get_current_without_subscription(commands, caller):
    result = await commands.get_current(caller)
    assert result["hasActiveSubscription"] is False
    assert result["subscriptionId"] is None
    assert result["daysLeft"] == 0


@pytest.mark.asyncio
async def test_get_current_prefers_active_over_history(commands, caller, seed_subscription, now):
    await seed_subscription(status="canceled", start=now - timedelta(days=90))
    active = await seed_subscription(status="active", plan_id="12-month", start=now)

    result = await commands.get_current(caller)

    assert result["subscriptionId"] == str(active.id)
    assert result["plan"] == "12-month"
    assert result["daysLeft"] == 365


@pytest.mark.asyncio
async def test_list_invoices_merges_provider_links(
    commands, gateway, caller, seed_subscription, reconciler, invoice_event, now
):
    sub = await seed_subscription(status="active")
    await reconciler.apply(
        parse_event(
            invoice_event(
                "evt_i1", "invoice.paid", "in_1", sub.provider_subscription_ref, status="paid"
            )
        )
    )
    gateway.invoices[sub.provider_subscription_ref] = [
        ProviderInvoice(
            ref="in_1",
            subscription_ref=sub.provider_subscription_ref,
            amount_paid_cents=999,
            currency="jmd",
            status="paid",
            issued_at=now,
            hosted_url="https://pay.example.test/fresh",
            pdf_url=None,
        ),
        ProviderInvoice(
            ref="in_2",
            subscription_ref=sub.provider_subscription_ref,
            amount_paid_cents=0,
            currency="jmd",
            status="open",
            issued_at=now + timedelta(days=28),
            hosted_url=None,
            pdf_url=None,
        ),
    ]

    invoices = await commands.list_invoices(caller, str(sub.id))

    assert [item["providerInvoiceRef"] for item in invoices] == ["in_2", "in_1"]
    assert invoices[1]["hostedUrl"] == "https://pay.example.test/fresh"
    assert invoices[1]["pdfUrl"] == "https://pay.example.test/in_1.pdf"


@pytest.mark.asyncio
async def test_list_invoices_falls_back_to_store(
    commands, gateway, caller, seed_subscription, reconciler, invoice_event
):
    sub = await seed_subscription(status="active")
    await reconciler.apply(
        parse_event(
            invoice_event("evt_i9", "invoice.created", "in_9", sub.provider_subscription_ref)
        )
    )
    gateway.unavailable = True

    invoices = await commands.list_invoices(caller, str(sub.id))

    assert [item["providerInvoiceRef"] for item in invoices] == ["in_9"]
    assert invoices[0]["status"] == "open"
