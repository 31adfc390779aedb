"""Subscription model mirroring the provider's recurring billing object."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fitcore.models.base import Base, UTCDateTime, utcnow

if TYPE_CHECKING:
    from fitcore.models.invoice import Invoice

SUBSCRIPTION_STATUSES = (
    "incomplete",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "cancel_pending",
)
# At most one row per user may hold one of these statuses.
ACTIVE_SET_STATUSES = ("trialing", "active", "past_due", "cancel_pending")
# Statuses that grant access in the UI.
ENTITLED_STATUSES = ("trialing", "active", "cancel_pending")

_ACTIVE_SET_SQL = "status IN ('trialing','active','past_due','cancel_pending')"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    plan_id: Mapped[str] = mapped_column(Text, nullable=False)
    provider_subscription_ref: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    provider_customer_ref: Mapped[str | None] = mapped_column(Text)
    provider_price_ref: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False)
    billing_environment: Mapped[str] = mapped_column(Text, nullable=False, default="test")
    last_event_id: Mapped[str | None] = mapped_column(Text)
    provider_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    invoices: Mapped[list[Invoice]] = relationship(
        back_populates="subscription", lazy="raise", passive_deletes=True
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('incomplete','trialing','active','past_due','canceled','cancel_pending')",
            name="ck_subscription_status",
        ),
        CheckConstraint(
            "plan_id IN ('1-month','3-month','6-month','12-month')",
            name="ck_subscription_plan",
        ),
        CheckConstraint(
            "(status = 'canceled') = (canceled_at IS NOT NULL)",
            name="ck_subscription_canceled_at",
        ),
        CheckConstraint(
            "NOT cancel_at_period_end OR status IN ('cancel_pending','canceled')",
            name="ck_subscription_cancel_flag",
        ),
        CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_subscription_period",
        ),
        CheckConstraint(
            "billing_environment IN ('test','production')",
            name="ck_subscription_environment",
        ),
        Index(
            "idx_subscriptions_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text(_ACTIVE_SET_SQL),
            sqlite_where=text(_ACTIVE_SET_SQL),
        ),
        Index("idx_subscriptions_user", "user_id", "created_at"),
        Index("idx_subscriptions_canceled_at", "status", "canceled_at"),
    )
