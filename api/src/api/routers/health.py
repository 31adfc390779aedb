"""Liveness and readiness probes."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api.dependencies import get_plan_catalog, get_session_factory
from api.services.billing_errors import BillingError

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": "fitcore-billing"}


@router.get("/health/ready")
async def readiness_check(session_factory=Depends(get_session_factory)):
    """Ready once the database answers and the plan catalog loads."""
    checks: dict[str, str] = {}
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = str(exc)

    try:
        checks["plans"] = "ok" if len(get_plan_catalog()) else "empty"
    except BillingError as exc:
        checks["plans"] = exc.message

    if all(value == "ok" for value in checks.values()):
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
