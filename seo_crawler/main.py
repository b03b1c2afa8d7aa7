"""
SEO Site Crawler - Main Application Entry Point
FastAPI application with lifespan management.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from seo_crawler.api.v1.routes import crawls, health, schedules
from seo_crawler.core.config import get_settings
from seo_crawler.core.database import build_engine, build_session_factory, create_tables
from seo_crawler.core.logging import configure_logging
from seo_crawler.core.redis import CacheManager, close_redis_pool, get_redis_client
from seo_crawler.engines.analytics.engine import CrawlAnalytics
from seo_crawler.engines.crawler.control import CrawlJobManager
from seo_crawler.engines.crawler.runner import CrawlJobRunner
from seo_crawler.services.store import CrawlStore, PersistenceError

logger = structlog.get_logger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Manage application lifecycle: startup and shutdown."""
    configure_logging()
    logger.info("Starting SEO Site Crawler", version=settings.APP_VERSION, env=settings.ENV)

    engine = build_engine(settings.database_url, settings)
    if settings.DB_CREATE_TABLES:
        await create_tables(engine)
    store = CrawlStore(build_session_factory(engine))
    await store.ping()
    logger.info("Database connection verified")

    # Redis is optional: without it progress stays in-process
    redis = await get_redis_client()
    cache = None
    if redis is not None:
        await redis.ping()
        cache = CacheManager(redis)
        logger.info("Redis connection verified")

    app.state.store = store
    app.state.analytics = CrawlAnalytics(store)
    app.state.cache = cache
    app.state.manager = CrawlJobManager(
        lambda: CrawlJobRunner(store, settings),
        cache=cache,
        progress_ttl=settings.REDIS_PROGRESS_TTL,
    )

    yield

    # Graceful shutdown: running jobs end as cancelled before the pool closes
    await app.state.manager.shutdown()
    await engine.dispose()
    if redis is not None:
        await redis.aclose()
        await close_redis_pool()
    logger.info("Application shutdown complete")


def create_application() -> FastAPI:
    app = FastAPI(
        title="SEO Site Crawler API",
        description="On-demand site crawls with per-page SEO analysis and issue detection.",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.ENV != "production" else None,
        redoc_url="/redoc" if settings.ENV != "production" else None,
        lifespan=lifespan,
    )

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    # Routers
    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(crawls.router, prefix="/api/v1/crawls", tags=["Crawls"])
    app.include_router(schedules.router, prefix="/api/v1/schedules", tags=["Schedules"])

    @app.exception_handler(PersistenceError)
    async def persistence_exception_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Storage unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"detail": "Storage unavailable", "request_id": request.headers.get("x-request-id")},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": request.headers.get("x-request-id")},
        )

    return app


app = create_application()


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "seo_crawler.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.ENV == "development",
    )
