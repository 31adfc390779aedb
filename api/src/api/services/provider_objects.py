"""Normalized views of provider (Stripe) subscription and invoice objects.

Both webhook payloads and API responses pass through these parsers so the
rest of the billing core never touches raw provider dictionaries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Provider status -> local status. Anything missing here is unknown and must
# not reach the UI.
PROVIDER_STATUS_MAP = {
    "incomplete": "incomplete",
    "incomplete_expired": "canceled",
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "paused": "past_due",
    "canceled": "canceled",
}

PROVIDER_INVOICE_STATUS_MAP = {
    "draft": "open",
    "open": "open",
    "paid": "paid",
    "void": "void",
    "uncollectible": "uncollectible",
}


def as_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OSError):
        return None


def map_provider_status(raw: str | None) -> str | None:
    status = PROVIDER_STATUS_MAP.get(str(raw or "").strip())
    if status is None and raw:
        logger.warning("Unmapped provider subscription status: %s", raw)
    return status


def _ref(value: Any) -> str | None:
    """Return the id of an expandable field (either a string or an object)."""
    if isinstance(value, dict):
        value = value.get("id")
    text = str(value or "").strip()
    return text or None


@dataclass
class ProviderSubscription:
    ref: str
    provider_status: str
    status: str | None
    customer_ref: str | None
    price_ref: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    metadata: dict[str, str] = field(default_factory=dict)
    client_secret: str | None = None


@dataclass
class ProviderInvoice:
    ref: str
    subscription_ref: str | None
    amount_paid_cents: int
    currency: str | None
    status: str
    issued_at: datetime | None
    hosted_url: str | None
    pdf_url: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "providerInvoiceRef": self.ref,
            "amountPaidCents": self.amount_paid_cents,
            "currency": self.currency,
            "status": self.status,
            "issuedAt": self.issued_at.isoformat() if self.issued_at else None,
            "hostedUrl": self.hosted_url,
            "pdfUrl": self.pdf_url,
        }


def _extract_client_secret(obj: dict[str, Any]) -> str | None:
    latest_invoice = obj.get("latest_invoice")
    if isinstance(latest_invoice, dict):
        confirmation = latest_invoice.get("confirmation_secret")
        if isinstance(confirmation, dict) and confirmation.get("client_secret"):
            return str(confirmation["client_secret"])
        payment_intent = latest_invoice.get("payment_intent")
        if isinstance(payment_intent, dict) and payment_intent.get("client_secret"):
            return str(payment_intent["client_secret"])
    setup_intent = obj.get("pending_setup_intent")
    if isinstance(setup_intent, dict) and setup_intent.get("client_secret"):
        return str(setup_intent["client_secret"])
    return None


def subscription_from_payload(obj: dict[str, Any]) -> ProviderSubscription:
    ref = _ref(obj.get("id"))
    if not ref:
        raise ValueError("Provider subscription payload has no id")

    items = (obj.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}

    # Newer API versions carry the period on the subscription item.
    period_start = obj.get("current_period_start") or first_item.get("current_period_start")
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")

    raw_status = str(obj.get("status") or "").strip()
    metadata = obj.get("metadata") or {}
    return ProviderSubscription(
        ref=ref,
        provider_status=raw_status,
        status=map_provider_status(raw_status),
        customer_ref=_ref(obj.get("customer")),
        price_ref=_ref(price),
        current_period_start=as_datetime(period_start),
        current_period_end=as_datetime(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
        canceled_at=as_datetime(obj.get("canceled_at")),
        metadata={str(k): str(v) for k, v in metadata.items()},
        client_secret=_extract_client_secret(obj),
    )


def invoice_subscription_ref(obj: dict[str, Any]) -> str | None:
    direct = _ref(obj.get("subscription"))
    if direct:
        return direct
    parent = obj.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _ref(details.get("subscription"))


def invoice_from_payload(obj: dict[str, Any]) -> ProviderInvoice:
    ref = _ref(obj.get("id"))
    if not ref:
        raise ValueError("Provider invoice payload has no id")
    raw_status = str(obj.get("status") or "").strip()
    return ProviderInvoice(
        ref=ref,
        subscription_ref=invoice_subscription_ref(obj),
        amount_paid_cents=int(obj.get("amount_paid") or 0),
        currency=(str(obj["currency"]).lower() if obj.get("currency") else None),
        status=PROVIDER_INVOICE_STATUS_MAP.get(raw_status, "open"),
        issued_at=as_datetime(obj.get("created")),
        hosted_url=obj.get("hosted_invoice_url"),
        pdf_url=obj.get("invoice_pdf"),
    )
