"""API test configuration."""

from __future__ import annotations

import dataclasses
import hashlib
import hmac
import json
import time
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from api.dependencies import (
    get_clock,
    get_current_caller,
    get_plan_catalog,
    get_provider_gateway,
    get_session_factory,
    reset_dependency_caches,
)
from api.main import create_app
from api.services.billing_errors import ProviderUnavailable
from api.services.provider_objects import ProviderInvoice, ProviderSubscription
from api.services.reconciler import Reconciler
from api.services.stripe_service import StripeGateway
from api.services.subscription_service import Caller, SubscriptionCommands
from fitcore.config import reset_settings_cache
from fitcore.models import Base, Subscription
from fitcore.services.plans import build_plan_catalog
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

NOW = datetime(2026, 1, 31, 12, 0, tzinfo=UTC)
JWT_SECRET = "test-secret-key"
WEBHOOK_SECRET = "whsec_test_secret"
PRICE_REFS = {
    "1-month": "price_month",
    "3-month": "price_quarter",
    "6-month": "price_half",
    "12-month": "price_year",
}


class FakeGateway(StripeGateway):
    """In-memory provider; webhook signature checks stay real."""

    def __init__(self, now: datetime):
        super().__init__(secret_key="sk_test_fake")
        self.now = now
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.invoices: dict[str, list[ProviderInvoice]] = {}
        self.calls: list[tuple[str, dict]] = []
        self.unavailable = False
        self._counter = 0
        self._created_by_key: dict[str, ProviderSubscription] = {}

    def _record(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        if self.unavailable:
            raise ProviderUnavailable()

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _snapshot(self, ref: str) -> ProviderSubscription:
        return self.subscriptions.get(ref) or ProviderSubscription(
            ref=ref,
            provider_status="active",
            status="active",
            customer_ref=None,
            price_ref=None,
            current_period_start=None,
            current_period_end=None,
            cancel_at_period_end=False,
            canceled_at=None,
        )

    async def ensure_customer(self, user_id, email, *, existing_ref=None):
        self._record("ensure_customer", user_id=user_id, existing_ref=existing_ref)
        return existing_ref or f"cus_{user_id}"

    async def create_subscription(
        self, customer_ref, price_ref, payment_method_token, *, user_id, plan_id, idempotency_key
    ):
        self._record(
            "create_subscription",
            customer_ref=customer_ref,
            price_ref=price_ref,
            user_id=user_id,
            plan_id=plan_id,
            idempotency_key=idempotency_key,
        )
        # Same key, same subscription.
        if idempotency_key in self._created_by_key:
            return self._created_by_key[idempotency_key]
        self._counter += 1
        created = ProviderSubscription(
            ref=f"sub_Fake{self._counter:04d}",
            provider_status="incomplete",
            status="incomplete",
            customer_ref=customer_ref,
            price_ref=price_ref,
            current_period_start=self.now,
            current_period_end=None,
            cancel_at_period_end=False,
            canceled_at=None,
            metadata={"user_id": user_id, "plan_id": plan_id},
            client_secret=f"pi_{self._counter}_secret_fake",
        )
        self.subscriptions[created.ref] = created
        self._created_by_key[idempotency_key] = created
        return created

    async def retrieve_subscription(self, provider_sub_ref):
        self._record("retrieve_subscription", ref=provider_sub_ref)
        return self.subscriptions.get(provider_sub_ref)

    async def cancel_immediate(self, provider_sub_ref, *, idempotency_key):
        self._record("cancel_immediate", ref=provider_sub_ref, idempotency_key=idempotency_key)
        updated = dataclasses.replace(
            self._snapshot(provider_sub_ref),
            provider_status="canceled",
            status="canceled",
            canceled_at=self.now,
        )
        self.subscriptions[provider_sub_ref] = updated
        return updated

    async def cancel_at_period_end(self, provider_sub_ref, *, idempotency_key):
        self._record("cancel_at_period_end", ref=provider_sub_ref, idempotency_key=idempotency_key)
        updated = dataclasses.replace(self._snapshot(provider_sub_ref), cancel_at_period_end=True)
        self.subscriptions[provider_sub_ref] = updated
        return updated

    async def resume(self, provider_sub_ref, *, idempotency_key):
        self._record("resume", ref=provider_sub_ref, idempotency_key=idempotency_key)
        updated = dataclasses.replace(self._snapshot(provider_sub_ref), cancel_at_period_end=False)
        self.subscriptions[provider_sub_ref] = updated
        return updated

    async def list_invoices(self, provider_sub_ref, *, limit=24):
        self._record("list_invoices", ref=provider_sub_ref)
        return list(self.invoices.get(provider_sub_ref, []))

    async def is_price_active_recurring(self, price_ref):
        self._record("is_price_active_recurring", price_ref=price_ref)
        return price_ref in PRICE_REFS.values()


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a provider signature header over the raw body."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def _ts(value: datetime | None) -> int | None:
    return int(value.timestamp()) if value is not None else None


@pytest.fixture(autouse=True)
def billing_env(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", JWT_SECRET)
    monkeypatch.setenv("PROVIDER_SECRET_KEY", "sk_test_fake")
    monkeypatch.setenv("PROVIDER_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("PROVIDER_PRICE_1_MONTH", PRICE_REFS["1-month"])
    monkeypatch.setenv("PROVIDER_PRICE_3_MONTH", PRICE_REFS["3-month"])
    monkeypatch.setenv("PROVIDER_PRICE_6_MONTH", PRICE_REFS["6-month"])
    monkeypatch.setenv("PROVIDER_PRICE_12_MONTH", PRICE_REFS["12-month"])
    monkeypatch.setenv("SKIP_MIGRATION_CHECK", "true")
    monkeypatch.setenv("SKIP_PLAN_VALIDATION", "true")
    reset_settings_cache()
    reset_dependency_caches()
    yield
    reset_settings_cache()
    reset_dependency_caches()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def catalog():
    return build_plan_catalog(PRICE_REFS, currency="JMD")


@pytest.fixture
def gateway():
    return FakeGateway(NOW)


@pytest.fixture
def commands(session_factory, catalog, gateway):
    return SubscriptionCommands(session_factory, catalog, gateway, clock=lambda: NOW)


@pytest.fixture
def reconciler(session_factory, catalog, gateway):
    return Reconciler(session_factory, catalog, gateway, clock=lambda: NOW)


@pytest.fixture
def caller():
    return Caller(user_id="user-1", email="user1@example.com")


@pytest.fixture
def seed_subscription(session_factory, catalog):
    """Insert a subscription row directly, bypassing the provider."""

    async def _seed(
        *,
        user_id: str = "user-1",
        plan_id: str = "1-month",
        status: str = "active",
        ref: str | None = None,
        start: datetime = NOW - timedelta(days=5),
        canceled_at: datetime | None = None,
        provider_updated_at: datetime | None = None,
    ) -> Subscription:
        plan = catalog.lookup(plan_id)
        if status == "canceled" and canceled_at is None:
            canceled_at = NOW
        sub = Subscription(
            user_id=user_id,
            plan_id=plan.plan_id,
            provider_subscription_ref=ref or f"sub_{uuid.uuid4().hex}",
            provider_customer_ref=f"cus_{user_id}",
            provider_price_ref=plan.provider_price_ref,
            status=status,
            current_period_start=start,
            current_period_end=plan.period_end(start),
            cancel_at_period_end=status == "cancel_pending",
            canceled_at=canceled_at,
            amount_cents=plan.unit_price_cents,
            currency=plan.currency,
            billing_environment="test",
            provider_updated_at=provider_updated_at,
            created_at=start,
            updated_at=start,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(sub)
        return sub

    return _seed


@pytest.fixture
def subscription_event():
    """Build a provider subscription event envelope."""

    def _build(
        event_id: str,
        kind: str,
        ref: str,
        *,
        status: str = "active",
        created: datetime = NOW,
        price_ref: str = PRICE_REFS["1-month"],
        customer: str | None = "cus_user-1",
        metadata: dict | None = None,
        cancel_at_period_end: bool = False,
        canceled_at: datetime | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> dict:
        return {
            "id": event_id,
            "object": "event",
            "type": kind,
            "created": _ts(created),
            "data": {
                "object": {
                    "id": ref,
                    "object": "subscription",
                    "status": status,
                    "customer": customer,
                    "cancel_at_period_end": cancel_at_period_end,
                    "canceled_at": _ts(canceled_at),
                    "metadata": {"user_id": "user-1"} if metadata is None else metadata,
                    "items": {
                        "data": [
                            {
                                "price": {"id": price_ref},
                                "current_period_start": _ts(period_start or created),
                                "current_period_end": _ts(period_end),
                            }
                        ]
                    },
                }
            },
        }

    return _build


@pytest.fixture
def invoice_event():
    """Build a provider invoice event envelope."""

    def _build(
        event_id: str,
        kind: str,
        invoice_ref: str,
        subscription_ref: str,
        *,
        status: str = "open",
        amount_paid: int = 0,
        created: datetime = NOW,
    ) -> dict:
        return {
            "id": event_id,
            "object": "event",
            "type": kind,
            "created": _ts(created),
            "data": {
                "object": {
                    "id": invoice_ref,
                    "object": "invoice",
                    "subscription": subscription_ref,
                    "status": status,
                    "amount_paid": amount_paid,
                    "currency": "jmd",
                    "created": _ts(created),
                    "hosted_invoice_url": f"https://pay.example.test/{invoice_ref}",
                    "invoice_pdf": f"https://pay.example.test/{invoice_ref}.pdf",
                }
            },
        }

    return _build


@pytest.fixture
def signed_post():
    """POST a signed webhook body to the provider endpoint."""

    async def _post(client: AsyncClient, envelope: dict, *, secret: str = WEBHOOK_SECRET):
        body = json.dumps(envelope).encode()
        return await client.post(
            "/webhooks/provider",
            content=body,
            headers={"stripe-signature": sign_payload(body, secret)},
        )

    return _post


@pytest.fixture
def app(session_factory, catalog, gateway):
    a = create_app()
    a.dependency_overrides[get_session_factory] = lambda: session_factory
    a.dependency_overrides[get_plan_catalog] = lambda: catalog
    a.dependency_overrides[get_provider_gateway] = lambda: gateway
    a.dependency_overrides[get_clock] = lambda: (lambda: NOW)
    return a


@pytest.fixture
async def client(app, caller):
    app.dependency_overrides[get_current_caller] = lambda: caller
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def unauthenticated_client(app):
    """Client with NO caller override -- tests that endpoints require auth."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def sign():
    return sign_payload


@pytest.fixture
def bearer_token():
    """Mint a bearer token the way the auth service does."""

    def _mint(sub: str = "user-1", **claims) -> str:
        return jwt.encode({"sub": sub, **claims}, JWT_SECRET, algorithm="HS256")

    return _mint
