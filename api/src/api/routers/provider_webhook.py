"""Payment provider webhook handler."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from fitcore.config import get_settings
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.dependencies import get_provider_gateway, get_reconciler, get_session_factory
from api.services.billing_errors import InvalidRequest, SignatureInvalid
from api.services.reconciler import ANOMALY, Reconciler, TransientReconcileError, parse_event
from api.services.stripe_service import StripeGateway
from api.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)
router = APIRouter()

SIGNATURE_HEADER = "stripe-signature"


async def _audit(
    session_factory: async_sessionmaker[AsyncSession], event_type: str, metadata: dict
) -> None:
    try:
        async with session_factory() as session:
            async with session.begin():
                SubscriptionStore(session).audit(event_type, metadata)
    except SQLAlchemyError:
        logger.warning("Could not write %s audit record", event_type)


@router.post("/provider")
async def provider_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_provider_gateway),
    reconciler: Reconciler = Depends(get_reconciler),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    # Verbatim bytes; re-serializing would break the signature.
    payload = await request.body()
    sig_header = request.headers.get(SIGNATURE_HEADER, "")

    envelope: dict = {}
    try:
        envelope = gateway.verify_webhook_signature(
            payload, sig_header, get_settings().provider_webhook_secret
        )
        event = parse_event(envelope)
    except SignatureInvalid:
        logger.warning("Rejected provider webhook with invalid signature")
        await _audit(session_factory, "webhook.signature_invalid", {"reason": "invalid_signature"})
        raise
    except InvalidRequest as exc:
        # Authentic but unusable; redelivery would not change it.
        event_id = str(envelope.get("id") or "") or None
        logger.warning("Acknowledged malformed provider event %s: %s", event_id, exc.message)
        await _audit(
            session_factory,
            "webhook.anomaly",
            {"event_id": event_id, "reason": "malformed_envelope"},
        )
        return {"success": True, "data": {"eventId": event_id, "status": ANOMALY}}

    try:
        outcome = await reconciler.apply(event)
    except TransientReconcileError as exc:
        return JSONResponse(
            status_code=503,
            headers={"Retry-After": "30"},
            content={
                "success": False,
                "error": {
                    "code": exc.kind,
                    "message": "Event could not be processed; retry later",
                },
            },
        )
    return {"success": True, "data": {"eventId": event.event_id, "status": outcome}}
