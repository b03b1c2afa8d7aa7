"""Health check endpoints for load balancer and monitoring."""

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.exceptions import RedisError

from seo_crawler.core.config import get_settings
from seo_crawler.services.store import PersistenceError

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    checks: dict[str, str]
    running_jobs: int = 0


async def check_database(request: Request) -> str:
    try:
        await request.app.state.store.ping()
    except PersistenceError as e:
        return f"unhealthy: {e}"
    return "healthy"


async def check_redis(request: Request) -> str:
    # Redis only mirrors live progress; crawling works without it
    cache = getattr(request.app.state, "cache", None)
    if cache is None:
        return "disabled"
    try:
        await cache.ping()
    except (RedisError, OSError) as e:
        return f"unhealthy: {e}"
    return "healthy"


@router.get("", response_model=HealthResponse, include_in_schema=False)
async def health_check(request: Request) -> HealthResponse:
    checks = {
        "database": await check_database(request),
        "redis": await check_redis(request),
    }
    degraded = any(value.startswith("unhealthy") for value in checks.values())

    return HealthResponse(
        status="degraded" if degraded else "healthy",
        version=get_settings().APP_VERSION,
        checks=checks,
        running_jobs=request.app.state.manager.running_count,
    )


@router.get("/ready", include_in_schema=False)
async def readiness(request: Request):
    """Ready once the crawl store answers; jobs cannot be created or read without it."""
    database = await check_database(request)
    if database != "healthy":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ready": False, "database": database},
        )
    return {"ready": True}


@router.get("/live", include_in_schema=False)
async def liveness() -> dict:
    return {"alive": True}
