"""Read-side projection of a subscription for UI gating."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fitcore.models import Subscription
from fitcore.models.subscription import ENTITLED_STATUSES
from fitcore.services.periods import days_between


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def project_status(sub: Subscription | None, now: datetime) -> dict[str, Any]:
    if sub is None:
        return {
            "subscriptionId": None,
            "hasActiveSubscription": False,
            "plan": None,
            "status": None,
            "daysLeft": 0,
            "currentPeriodStart": None,
            "currentPeriodEnd": None,
            "cancelAtPeriodEnd": False,
        }
    return {
        "subscriptionId": str(sub.id),
        "hasActiveSubscription": sub.status in ENTITLED_STATUSES,
        "plan": sub.plan_id,
        "status": sub.status,
        "daysLeft": max(0, days_between(now, sub.current_period_end)),
        "currentPeriodStart": _iso(sub.current_period_start),
        "currentPeriodEnd": _iso(sub.current_period_end),
        "cancelAtPeriodEnd": bool(sub.cancel_at_period_end),
    }
