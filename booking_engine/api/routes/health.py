"""
Health Check Endpoints

Liveness and readiness probes. PostgreSQL is required for readiness.
Redis only backs the tenant policy cache, so losing it is reported as
"degraded" while the service keeps answering from the database.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from booking_engine.config import settings
from booking_engine.infra.database import check_db_health
from booking_engine.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

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
    service: str
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Readiness with per-dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


async def probe_dependencies() -> dict[str, str]:
    """Status of each backing service: ok, failed, degraded or disabled."""
    checks = {"database": "ok" if await check_db_health() else "failed"}

    if settings.policy_cache_ttl <= 0:
        checks["policy_cache"] = "disabled"
    elif await check_redis_health():
        checks["policy_cache"] = "ok"
    else:
        checks["policy_cache"] = "degraded"

    for name, state in checks.items():
        if state in ("failed", "degraded"):
            logger.warning(f"Readiness check: {name} {state}")
    return checks


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health() -> HealthResponse:
    """Always returns 200 if the application is running."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        service=settings.app_name,
        version="1.0.0",
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    responses={
        200: {"description": "Appointment storage is reachable"},
        503: {"description": "Appointment storage is unavailable"},
    },
)
async def ready():
    checks = await probe_dependencies()
    db_ok = checks["database"] == "ok"

    response = ReadyResponse(
        status="ready" if db_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )
    if not db_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )
    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
)
async def live() -> LiveResponse:
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )
