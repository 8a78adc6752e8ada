"""Health check endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel

from visibility_engine.api.deps import OrchestratorDep
from visibility_engine.config import settings
from visibility_engine.logging import get_logger

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    components: dict[str, bool] | None = None


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    database: bool
    redis: bool
    components: dict[str, bool] | None = None


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Basic health check endpoint that verifies the API is running.",
)
async def health_check() -> HealthResponse:
    """Basic health check - is the API up?

    Reports whether a real provider query adapter is configured.
    """
    from visibility_engine import __version__

    return HealthResponse(
        status="healthy",
        version=__version__,
        components={"provider_query": settings.provider_query_adapter != "stub"},
    )


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    summary="Readiness check",
    description="Verifies the database, Redis and the provider query adapter.",
)
async def readiness_check(orchestrator: OrchestratorDep) -> ReadinessResponse:
    """Readiness check including dependencies."""
    database_ok = False
    try:
        from visibility_engine.db.session import init_db

        init_db()
        database_ok = True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))

    redis_ok = False
    try:
        import redis

        r = redis.from_url(settings.redis_url)
        r.ping()
        redis_ok = True
    except Exception as e:
        logger.error("redis_health_check_failed", error=str(e))

    components = {"provider_query": await orchestrator.adapter.health_check()}

    return ReadinessResponse(
        ready=database_ok and redis_ok and all(components.values()),
        database=database_ok,
        redis=redis_ok,
        components=components,
    )


@router.get(
    "/health/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    description="Simple liveness probe for Kubernetes.",
)
async def liveness_check() -> dict[str, str]:
    """Kubernetes liveness probe - is the process alive?"""
    return {"status": "alive"}
