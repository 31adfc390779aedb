"""FastAPI dependency injection."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from functools import lru_cache

from fastapi import Depends, Request
from fitcore.config import get_settings
from fitcore.database import get_session_factory as _database_session_factory
from fitcore.services.plans import PlanCatalog, build_plan_catalog
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.billing_errors import ProviderUnavailable, Unauthenticated
from api.services.reconciler import Reconciler
from api.services.stripe_service import StripeGateway
from api.services.subscription_service import Caller, SubscriptionCommands

logger = logging.getLogger(__name__)

ADMIN_ROLES = {"admin", "owner"}


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return _database_session_factory()


@lru_cache(maxsize=1)
def _cached_gateway() -> StripeGateway:
    return StripeGateway.from_settings()


def get_provider_gateway() -> StripeGateway:
    return _cached_gateway()


@lru_cache(maxsize=1)
def _cached_plan_catalog() -> PlanCatalog:
    settings = get_settings()
    return build_plan_catalog(settings.provider_price_refs, currency=settings.billing_currency)


def get_plan_catalog() -> PlanCatalog:
    try:
        return _cached_plan_catalog()
    except ValueError as exc:
        logger.error("Plan catalog unavailable: %s", exc)
        raise ProviderUnavailable("Subscription plans are not configured") from exc


def reset_dependency_caches() -> None:
    """Clear cached gateway/catalog (useful in tests)."""
    _cached_gateway.cache_clear()
    _cached_plan_catalog.cache_clear()


def get_clock() -> Callable[[], datetime]:
    return lambda: datetime.now(UTC)


def _extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth[7:].strip()
        return token or None
    return None


def get_current_caller(request: Request) -> Caller:
    """Resolve the caller from a bearer JWT issued by the auth service."""
    settings = get_settings()
    raw_token = _extract_bearer_token(request)
    if not raw_token:
        raise Unauthenticated("Missing token")
    try:
        payload = jwt.decode(raw_token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise Unauthenticated("Invalid token")
    user_id = str(payload.get("sub") or payload.get("userId") or "").strip()
    if not user_id:
        raise Unauthenticated("Invalid token")
    role = str(payload.get("role") or "user").strip().lower()
    return Caller(
        user_id=user_id,
        email=payload.get("email"),
        role="admin" if role in ADMIN_ROLES else role,
    )


def get_subscription_commands(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    gateway: StripeGateway = Depends(get_provider_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> SubscriptionCommands:
    return SubscriptionCommands(
        session_factory,
        catalog,
        gateway,
        billing_environment=get_settings().billing_environment,
        clock=clock,
    )


def build_reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: PlanCatalog,
    gateway: StripeGateway,
    *,
    clock: Callable[[], datetime] | None = None,
) -> Reconciler:
    """Reconciler for callers outside a request, such as the maintenance worker."""
    return Reconciler(
        session_factory,
        catalog,
        gateway,
        billing_environment=get_settings().billing_environment,
        clock=clock or get_clock(),
    )


def get_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    gateway: StripeGateway = Depends(get_provider_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> Reconciler:
    return build_reconciler(session_factory, catalog, gateway, clock=clock)
