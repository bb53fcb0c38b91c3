"""GET /v1/health — Health check with real service checks."""

import logging
from fastapi import APIRouter, Request
from flowdesk.api.schemas import HealthResponse
from flowdesk.version import __version__

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Check health of the database, redis and the cron scheduler."""
    services: dict[str, bool] = {"api": True, "database": False, "redis": False, "scheduler": False}

    # Database
    try:
        async_session = request.app.state.async_session
        async with async_session() as session:
            from sqlalchemy import text
            await session.execute(text("SELECT 1"))
        services["database"] = True
    except Exception as exc:
        logger.warning("[health] DB check failed: %s", exc)

    # Redis
    try:
        redis_client = request.app.state.redis
        services["redis"] = await redis_client.health()
    except Exception as exc:
        logger.warning("[health] Redis check failed: %s", exc)

    scheduler = getattr(request.app.state, "cron_scheduler", None)
    services["scheduler"] = scheduler is not None

    overall = "ok" if all(services.values()) else "degraded"
    return HealthResponse(status=overall, version=__version__, services=services)
