"""Provider subscriptions created remotely but not persisted locally."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from fitcore.models.base import Base, UTCDateTime, utcnow


class SubscriptionCompensation(Base):
    __tablename__ = "subscription_compensations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_subscription_ref: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    provider_customer_ref: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    plan_id: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
