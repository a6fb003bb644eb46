"""
Health Check Endpoints

Liveness and readiness probes for the rescheduling engine. Readiness
covers the request store (Postgres) and, when response tokens live in
Redis, the token store. The detailed view adds the maintenance loops and
the token backlog.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import settings
from app.infra.database import check_db_health
from app.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "1.0.0"

_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float] = None


class ReadyResponse(BaseModel):
    """Readiness with per-store status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class EngineStatusResponse(BaseModel):
    """Stores, background loops and outstanding work."""
    status: str
    timestamp: datetime
    version: str
    uptime_seconds: Optional[float]
    checks: dict[str, str]
    maintenance: str
    pending_tokens: Optional[int]
    calendar_providers: list[str]
    notification_channel: str


async def check_stores() -> dict[str, str]:
    """Probe the request store and the token store.

    Returns:
        Mapping of store name to "ok", "failed", "error" or "not_required"
    """
    checks = {}

    try:
        checks["database"] = "ok" if await check_db_health() else "failed"
    except Exception as e:
        logger.error(f"Health check: database error - {e}")
        checks["database"] = "error"

    if settings.token_store_backend != "redis":
        checks["token_store"] = "not_required"
    else:
        try:
            checks["token_store"] = "ok" if await check_redis_health() else "failed"
        except Exception as e:
            logger.error(f"Health check: Redis error - {e}")
            checks["token_store"] = "error"

    return checks


def _all_ok(checks: dict[str, str]) -> bool:
    return all(v in ("ok", "not_required") for v in checks.values())


@router.get(
    "",
    response_model=HealthResponse,
    summary="Liveness probe",
    description="Returns 200 while the process is running. Does not touch the stores.",
)
async def health() -> HealthResponse:
    return HealthResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    description="Checks the request and token stores. Returns 503 if either is unavailable.",
    responses={503: {"description": "A store is unavailable"}},
)
async def ready():
    checks = await check_stores()
    ok = _all_ok(checks)
    if not ok:
        logger.warning(f"Readiness check failed: {checks}")

    response = ReadyResponse(
        status="ready" if ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )
    if not ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )
    return response


@router.get(
    "/engine",
    response_model=EngineStatusResponse,
    summary="Engine status",
    description="Stores, maintenance loops and token backlog. Only available in development.",
    include_in_schema=settings.is_development,
)
async def engine_status(request: Request) -> EngineStatusResponse:
    """
    Detailed engine status for debugging.

    Reads the maintenance scheduler and workflow that the lifespan put on
    app.state; either may be missing when the app runs without it.
    """
    if not settings.is_development:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found",
        )

    checks = await check_stores()

    maintenance = getattr(request.app.state, "maintenance", None)
    workflow = getattr(request.app.state, "workflow", None)

    pending_tokens = None
    providers: list[str] = []
    if workflow is not None:
        providers = sorted(workflow.providers)
        try:
            pending_tokens = len(await workflow.token_service.pending())
        except Exception as e:
            logger.error(f"Engine status: token store error - {e}")
            checks["token_store"] = "error"

    return EngineStatusResponse(
        status="healthy" if _all_ok(checks) else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        uptime_seconds=get_uptime_seconds(),
        checks=checks,
        maintenance="running" if maintenance and maintenance.is_running else "stopped",
        pending_tokens=pending_tokens,
        calendar_providers=providers,
        notification_channel="gateway" if settings.notification_gateway_url else "logging",
    )
