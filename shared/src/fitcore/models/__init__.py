"""SQLAlchemy ORM models for fitcore billing."""

from fitcore.models.base import Base
from fitcore.models.billing_event import BillingEvent
from fitcore.models.compensation import SubscriptionCompensation
from fitcore.models.customer import Customer
from fitcore.models.invoice import Invoice
from fitcore.models.processed_event import ProcessedEvent
from fitcore.models.subscription import Subscription

__all__ = [
    "Base",
    "BillingEvent",
    "Customer",
    "Invoice",
    "ProcessedEvent",
    "Subscription",
    "SubscriptionCompensation",
]
