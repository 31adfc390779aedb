"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fitcore.config import get_settings
from fitcore.database import close_engine, get_engine
from fitcore.services.plans import PlanCatalog
from sqlalchemy import text

from api.dependencies import (
    build_reconciler,
    get_plan_catalog,
    get_provider_gateway,
    get_session_factory,
)
from api.routers import health, provider_webhook, subscriptions
from api.services.billing_errors import BillingError, ProviderUnavailable
from api.services.maintenance import run_maintenance_worker
from api.services.stripe_service import StripeGateway

logger = logging.getLogger(__name__)


async def _assert_database_revision_current() -> None:
    settings = get_settings()
    if settings.skip_migration_check:
        return

    repo_root = Path(__file__).resolve().parents[3]
    alembic_ini = repo_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found; skipping migration revision check")
        return

    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(repo_root / "alembic"))
    script = ScriptDirectory.from_config(alembic_cfg)
    expected_heads = set(script.get_heads())
    if not expected_heads:
        return

    engine = get_engine()
    try:
        async with engine.connect() as connection:
            result = await connection.execute(text("SELECT version_num FROM alembic_version"))
            current_revisions = {str(row[0]) for row in result.fetchall() if row and row[0]}
    except Exception as exc:
        raise RuntimeError(
            "Database migration revision check failed. "
            "Run `alembic upgrade head` before starting the API."
        ) from exc

    if current_revisions != expected_heads:
        raise RuntimeError(
            "Database schema revision mismatch: "
            f"db={sorted(current_revisions)} expected={sorted(expected_heads)}. "
            "Run `alembic upgrade head`."
        )


async def validate_plan_catalog(catalog: PlanCatalog, gateway: StripeGateway) -> None:
    """Fail startup when a configured price is not an active recurring price."""
    invalid: list[str] = []
    for plan in catalog:
        if not await gateway.is_price_active_recurring(plan.provider_price_ref):
            invalid.append(plan.plan_id)
    if invalid:
        raise RuntimeError(
            "Provider prices are missing, inactive or not recurring for plans: "
            + ", ".join(sorted(invalid))
        )


async def _run_startup_checks() -> None:
    settings = get_settings()
    await _assert_database_revision_current()
    if settings.skip_plan_validation:
        logger.warning("SKIP_PLAN_VALIDATION is set; provider prices were not verified")
        return
    try:
        catalog = get_plan_catalog()
    except ProviderUnavailable as exc:
        raise RuntimeError(exc.message) from exc
    try:
        await validate_plan_catalog(catalog, get_provider_gateway())
    except ProviderUnavailable as exc:
        raise RuntimeError(f"Plan validation could not reach the provider: {exc.message}") from exc


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    maintenance_stop_event: asyncio.Event | None = None
    maintenance_task: asyncio.Task | None = None
    try:
        await _run_startup_checks()
        session_factory = get_session_factory()
        catalog = get_plan_catalog()
        gateway = get_provider_gateway()
        maintenance_stop_event = asyncio.Event()
        maintenance_task = asyncio.create_task(
            run_maintenance_worker(
                maintenance_stop_event,
                session_factory=session_factory,
                gateway=gateway,
                reconciler=build_reconciler(session_factory, catalog, gateway),
            )
        )
        yield
    finally:
        if maintenance_stop_event is not None:
            maintenance_stop_event.set()
        if maintenance_task is not None:
            try:
                await asyncio.wait_for(maintenance_task, timeout=5)
            except Exception:
                maintenance_task.cancel()
                with suppress(Exception):
                    await maintenance_task
        await close_engine()


def _warn_insecure_defaults() -> None:
    settings = get_settings()
    if settings.secret_key == "change-me-in-production":
        logger.warning("SECRET_KEY uses insecure default value")
    if not settings.provider_webhook_secret:
        logger.warning("PROVIDER_WEBHOOK_SECRET is empty; webhooks will be rejected")


async def _billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        detail = errors[0].get("msg", "")
        message = f"{location}: {detail}" if location else detail or message
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": {"code": "invalid-request", "message": message}},
    )


def create_app() -> FastAPI:
    app = FastAPI(title="Fitcore Billing API", version="0.1.0", lifespan=lifespan)
    _warn_insecure_defaults()
    app.add_exception_handler(BillingError, _billing_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(health.router, tags=["health"])
    app.include_router(
        subscriptions.router, prefix="/api/v1/subscriptions", tags=["subscriptions"]
    )
    app.include_router(provider_webhook.router, prefix="/webhooks", tags=["webhooks"])
    return app


app = create_app()
