"""Subscription endpoints under /api/v1/subscriptions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse
from fitcore.services.plans import PlanCatalog
from pydantic import BaseModel, ConfigDict, Field

from api.dependencies import get_current_caller, get_plan_catalog, get_subscription_commands
from api.services.subscription_service import Caller, SubscriptionCommands

router = APIRouter()


class CreateSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(alias="planId", min_length=1, max_length=32)
    payment_method_token: str | None = Field(
        default=None, alias="paymentMethodToken", max_length=255
    )


class CancelSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    at_period_end: bool = Field(default=True, alias="atPeriodEnd")


def _ok(data, status_code: int = status.HTTP_200_OK):
    if status_code == status.HTTP_200_OK:
        return {"success": True, "data": data}
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


@router.get("/plans")
async def list_plans(catalog: PlanCatalog = Depends(get_plan_catalog)):
    """Return the plan catalog."""
    return _ok([plan.to_dict() for plan in catalog])


@router.post("/create")
async def create_subscription(
    req: CreateSubscriptionRequest,
    caller: Caller = Depends(get_current_caller),
    commands: SubscriptionCommands = Depends(get_subscription_commands),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
):
    result = await commands.start_subscription(
        caller,
        req.plan_id,
        req.payment_method_token,
        nonce=idempotency_key,
    )
    return _ok(result, status.HTTP_201_CREATED)


@router.get("/user/current")
async def get_current_subscription(
    caller: Caller = Depends(get_current_caller),
    commands: SubscriptionCommands = Depends(get_subscription_commands),
):
    return _ok(await commands.get_current(caller))


@router.get("/status")
async def get_subscription_status(
    caller: Caller = Depends(get_current_caller),
    commands: SubscriptionCommands = Depends(get_subscription_commands),
):
    """Alias of /user/current."""
    return _ok(await commands.get_current(caller))


@router.delete("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: str,
    req: CancelSubscriptionRequest | None = None,
    caller: Caller = Depends(get_current_caller),
    commands: SubscriptionCommands = Depends(get_subscription_commands),
):
    at_period_end = req.at_period_end if req is not None else True
    result = await commands.cancel_subscription(
        caller, subscription_id, at_period_end=at_period_end
    )
    return _ok(result)


@router.post("/{subscription_id}/resume")
async def resume_subscription(
    subscription_id: str,
    caller: Caller = Depends(get_current_caller),
    commands: SubscriptionCommands = Depends(get_subscription_commands),
):
    return _ok(await commands.resume_subscription(caller, subscription_id))


@router.get("/{subscription_id}/invoices")
async def list_invoices(
    subscription_id: str,
    caller: Caller = Depends(get_current_caller),
    commands: SubscriptionCommands = Depends(get_subscription_commands),
):
    return _ok(await commands.list_invoices(caller, subscription_id))
