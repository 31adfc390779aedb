"""Append-only invoice history per subscription."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fitcore.models.base import Base, UTCDateTime, utcnow

if TYPE_CHECKING:
    from fitcore.models.subscription import Subscription

INVOICE_STATUSES = ("open", "paid", "void", "uncollectible")
# Allowed forward moves; anything else is ignored.
INVOICE_TRANSITIONS = {
    "open": frozenset({"paid", "void", "uncollectible"}),
    "paid": frozenset(),
    "void": frozenset(),
    "uncollectible": frozenset(),
}


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_invoice_ref: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    hosted_url: Mapped[str | None] = mapped_column(Text)
    pdf_url: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    subscription: Mapped[Subscription] = relationship(back_populates="invoices", lazy="raise")

    __table_args__ = (
        CheckConstraint(
            "status IN ('open','paid','void','uncollectible')",
            name="ck_invoice_status",
        ),
        Index("idx_invoices_subscription", "subscription_id", "issued_at"),
    )
