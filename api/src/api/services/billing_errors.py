"""Billing error taxonomy surfaced to API callers."""

from __future__ import annotations


class BillingError(Exception):
    """Base class; ``kind`` is the stable machine-readable code."""

    kind = "storage-error"
    status_code = 500
    default_message = "Subscription storage failed"

    def __init__(self, message: str | None = None, *, headers: dict[str, str] | None = None):
        self.message = message or self.default_message
        self.headers = headers
        super().__init__(self.message)

    def to_payload(self) -> dict[str, object]:
        return {"success": False, "error": {"code": self.kind, "message": self.message}}


class Unauthenticated(BillingError):
    kind = "unauthenticated"
    status_code = 401
    default_message = "Authentication required"


class Forbidden(BillingError):
    kind = "forbidden"
    status_code = 403
    default_message = "You do not have access to this subscription"


class InvalidRequest(BillingError):
    kind = "invalid-request"
    status_code = 400
    default_message = "Invalid request"


class PlanUnknown(BillingError):
    kind = "plan-unknown"
    status_code = 400
    default_message = "Unknown subscription plan"


class AlreadySubscribed(BillingError):
    kind = "already-subscribed"
    status_code = 409
    default_message = "You already have an active subscription"


class NotResumable(BillingError):
    kind = "not-resumable"
    status_code = 409
    default_message = "Subscription is not scheduled for cancellation"


class SubscriptionNotFound(BillingError):
    kind = "not-found"
    status_code = 404
    default_message = "Subscription not found"


class ProviderUnavailable(BillingError):
    kind = "provider-unavailable"
    status_code = 503
    default_message = "Payment provider is unavailable. Please try again shortly."

    def __init__(self, message: str | None = None, *, retry_after: int = 5):
        super().__init__(message, headers={"Retry-After": str(retry_after)})


class ProviderRejected(BillingError):
    kind = "provider-rejected"
    status_code = 400
    default_message = "Payment provider rejected the request"

    def __init__(self, message: str | None = None, *, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class SignatureInvalid(BillingError):
    kind = "signature-invalid"
    status_code = 400
    default_message = "Invalid webhook signature"


class StorageFailure(BillingError):
    kind = "storage-error"
    status_code = 500
