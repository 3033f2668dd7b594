"""Liveness and readiness probes."""

from fastapi import APIRouter
from pydantic import BaseModel

from app.config import settings
from app.core.redis_client import check_redis_connection
from app.database import check_database_connection
from app.dependencies import IntegrationsDep

router = APIRouter()


class HealthResponse(BaseModel):
    """Service identity and overall state."""

    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Readiness including backing services."""

    database: str
    redis: str
    integrations: dict[str, str]


def _state(ok: bool) -> str:
    return "healthy" if ok else "unhealthy"


@router.get("/health", response_model=HealthResponse, summary="Liveness probe")
async def health_check() -> HealthResponse:
    """Answers as long as the process is serving requests."""
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    summary="Readiness probe",
)
async def detailed_health_check(integrations: IntegrationsDep) -> DetailedHealthResponse:
    """
    Check PostgreSQL and Redis and list which integrations have credentials.

    Redis only backs the cache, so the service reports ``degraded`` rather
    than failing when it is down. Integrations are not called.
    """
    db_ok = await check_database_connection()
    redis_ok = await check_redis_connection()

    return DetailedHealthResponse(
        status="healthy" if db_ok and redis_ok else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        database=_state(db_ok),
        redis=_state(redis_ok),
        integrations=integrations.status(),
    )


@router.get("/ping", summary="Simple ping")
async def ping() -> dict[str, str]:
    """Cheapest possible round trip."""
    return {"message": "pong"}
