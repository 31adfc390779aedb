"""Static subscription plan catalog."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime

from fitcore.services.periods import add_interval

PLAN_IDS = ("1-month", "3-month", "6-month", "12-month")

# plan_id -> (display name, unit price cents, interval, interval count)
_PLAN_DEFINITIONS: dict[str, tuple[str, int, str, int]] = {
    "1-month": ("1 Month", 999, "month", 1),
    "3-month": ("3 Months", 2799, "month", 3),
    "6-month": ("6 Months", 4999, "month", 6),
    "12-month": ("12 Months", 8999, "year", 1),
}


@dataclass(frozen=True)
class Plan:
    plan_id: str
    display_name: str
    unit_price_cents: int
    interval: str
    interval_count: int
    provider_price_ref: str
    currency: str

    def period_end(self, start: datetime) -> datetime:
        """End of the billing period that begins at ``start``."""
        return add_interval(start, self.interval, self.interval_count)

    def to_dict(self) -> dict[str, object]:
        return {
            "planId": self.plan_id,
            "displayName": self.display_name,
            "unitPriceCents": self.unit_price_cents,
            "currency": self.currency,
            "interval": self.interval,
            "intervalCount": self.interval_count,
        }


class PlanCatalog:
    """Read-only mapping of plan ids to plans, built once at startup."""

    def __init__(self, plans: list[Plan]) -> None:
        if not plans:
            raise ValueError("Plan catalog must not be empty")
        self._plans = {plan.plan_id: plan for plan in plans}
        self._by_price_ref = {plan.provider_price_ref: plan for plan in plans}

    def lookup(self, plan_id: str) -> Plan | None:
        return self._plans.get(plan_id)

    def by_price_ref(self, price_ref: str | None) -> Plan | None:
        if not price_ref:
            return None
        return self._by_price_ref.get(price_ref)

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)


def build_plan_catalog(price_refs: Mapping[str, str], *, currency: str) -> PlanCatalog:
    """Build the catalog from configured provider price refs.

    Every plan must have a price ref; a missing one is a configuration error.
    """
    missing = [plan_id for plan_id in PLAN_IDS if not str(price_refs.get(plan_id) or "").strip()]
    if missing:
        raise ValueError(f"Missing provider price refs for plans: {', '.join(missing)}")

    plans = []
    for plan_id in PLAN_IDS:
        display_name, price_cents, interval, count = _PLAN_DEFINITIONS[plan_id]
        plans.append(
            Plan(
                plan_id=plan_id,
                display_name=display_name,
                unit_price_cents=price_cents,
                interval=interval,
                interval_count=count,
                provider_price_ref=str(price_refs[plan_id]).strip(),
                currency=currency.lower(),
            )
        )
    return PlanCatalog(plans)
