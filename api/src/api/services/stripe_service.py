"""Stripe SDK wrapper used by the subscription core."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Callable
from typing import Any

import stripe
from fitcore.config import get_settings

from api.services.billing_errors import (
    InvalidRequest,
    ProviderRejected,
    ProviderUnavailable,
    SignatureInvalid,
)
from api.services.provider_objects import (
    ProviderInvoice,
    ProviderSubscription,
    invoice_from_payload,
    subscription_from_payload,
)

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300


def derive_idempotency_key(user_id: str, operation: str, nonce: str) -> str:
    """Stable provider idempotency key for a mutating call."""
    raw = f"{user_id}:{operation}:{nonce}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _to_plain(obj: Any) -> Any:
    if obj is None or isinstance(obj, (dict, list)):
        return obj
    # StripeObject renders itself as JSON.
    return json.loads(str(obj))


def _rejected_message(exc: stripe.StripeError, fallback: str) -> str:
    message = str(getattr(exc, "user_message", "") or "").strip()
    return message or fallback


class StripeGateway:
    """Async facade over the blocking Stripe SDK.

    Each call runs in a worker thread under a deadline; SDK errors are mapped to
    ``ProviderUnavailable`` (retryable) or ``ProviderRejected`` (terminal).
    """

    def __init__(
        self,
        *,
        secret_key: str,
        timeout_seconds: float = 15.0,
        max_network_retries: int = 2,
    ) -> None:
        self._secret_key = secret_key.strip()
        self._timeout = timeout_seconds
        self._max_network_retries = max_network_retries

    @classmethod
    def from_settings(cls) -> StripeGateway:
        settings = get_settings()
        return cls(
            secret_key=settings.provider_secret_key,
            timeout_seconds=max(1, settings.provider_call_timeout_ms) / 1000,
            max_network_retries=settings.provider_max_network_retries,
        )

    def _configure(self) -> None:
        if not self._secret_key:
            raise ProviderUnavailable("Payment provider is not configured")
        stripe.api_key = self._secret_key
        stripe.max_network_retries = self._max_network_retries

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        self._configure()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout,
            )
        except TimeoutError:
            logger.warning("Stripe %s timed out after %.1fs", operation, self._timeout)
            raise ProviderUnavailable() from None
        except stripe.CardError as exc:
            raise ProviderRejected(
                _rejected_message(exc, "Your card was declined"), status_code=402
            ) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            logger.warning("Stripe %s transient failure: %s", operation, exc)
            raise ProviderUnavailable() from exc
        except stripe.AuthenticationError as exc:
            logger.error("Stripe %s authentication failed; check PROVIDER_SECRET_KEY", operation)
            raise ProviderUnavailable("Payment provider is not configured") from exc
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe %s rejected: %s", operation, exc)
            raise ProviderRejected(
                _rejected_message(exc, "Payment provider rejected the request")
            ) from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe %s failed: %s", operation, exc)
            raise ProviderUnavailable() from exc
        return _to_plain(result)

    async def ensure_customer(
        self,
        user_id: str,
        email: str | None,
        *,
        existing_ref: str | None = None,
    ) -> str:
        """Return the customer ref for ``user_id``, creating it on first use."""
        if existing_ref:
            return existing_ref
        payload: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            payload["email"] = email
        customer = await self._call(
            "customer.create",
            stripe.Customer.create,
            idempotency_key=derive_idempotency_key(user_id, "customer.create", "v1"),
            **payload,
        )
        return str(customer["id"])

    async def create_subscription(
        self,
        customer_ref: str,
        price_ref: str,
        payment_method_token: str | None,
        *,
        user_id: str,
        plan_id: str,
        idempotency_key: str,
    ) -> ProviderSubscription:
        payload: dict[str, Any] = {
            "customer": customer_ref,
            "items": [{"price": price_ref}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "metadata": {"user_id": user_id, "plan_id": plan_id},
            "expand": ["latest_invoice.confirmation_secret", "pending_setup_intent"],
        }
        if payment_method_token:
            await self._call(
                "payment_method.attach",
                stripe.PaymentMethod.attach,
                payment_method_token,
                customer=customer_ref,
                idempotency_key=f"{idempotency_key}:attach",
            )
            payload["default_payment_method"] = payment_method_token

        created = await self._call(
            "subscription.create",
            stripe.Subscription.create,
            idempotency_key=idempotency_key,
            **payload,
        )
        return subscription_from_payload(created)

    async def retrieve_subscription(self, provider_sub_ref: str) -> ProviderSubscription | None:
        try:
            found = await self._call(
                "subscription.retrieve", stripe.Subscription.retrieve, provider_sub_ref
            )
        except ProviderRejected:
            return None
        if not found:
            return None
        return subscription_from_payload(found)

    async def cancel_immediate(
        self, provider_sub_ref: str, *, idempotency_key: str
    ) -> ProviderSubscription:
        canceled = await self._call(
            "subscription.cancel",
            stripe.Subscription.cancel,
            provider_sub_ref,
            idempotency_key=idempotency_key,
        )
        return subscription_from_payload(canceled)

    async def cancel_at_period_end(
        self, provider_sub_ref: str, *, idempotency_key: str
    ) -> ProviderSubscription:
        updated = await self._call(
            "subscription.cancel_at_period_end",
            stripe.Subscription.modify,
            provider_sub_ref,
            cancel_at_period_end=True,
            idempotency_key=idempotency_key,
        )
        return subscription_from_payload(updated)

    async def resume(self, provider_sub_ref: str, *, idempotency_key: str) -> ProviderSubscription:
        updated = await self._call(
            "subscription.resume",
            stripe.Subscription.modify,
            provider_sub_ref,
            cancel_at_period_end=False,
            idempotency_key=idempotency_key,
        )
        return subscription_from_payload(updated)

    async def list_invoices(self, provider_sub_ref: str, *, limit: int = 24) -> list[ProviderInvoice]:
        listing = await self._call(
            "invoice.list",
            stripe.Invoice.list,
            subscription=provider_sub_ref,
            limit=limit,
        )
        return [invoice_from_payload(item) for item in (listing or {}).get("data", [])]

    async def is_price_active_recurring(self, price_ref: str) -> bool:
        """Check whether a Stripe price is active and recurring."""
        price = await self._call("price.retrieve", stripe.Price.retrieve, price_ref)
        return bool(price.get("active") and price.get("recurring"))

    def verify_webhook_signature(
        self,
        raw_body: bytes,
        signature_header: str,
        secret: str,
    ) -> dict[str, Any]:
        """Verify the signature over the verbatim body and return the parsed event."""
        if not secret:
            raise ProviderUnavailable("Webhook secret is not configured")
        if not signature_header:
            raise SignatureInvalid()
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, WEBHOOK_TOLERANCE_SECONDS
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            raise SignatureInvalid() from exc
        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise InvalidRequest("Invalid webhook payload") from exc
        if not isinstance(event, dict):
            raise InvalidRequest("Invalid webhook payload")
        return event
