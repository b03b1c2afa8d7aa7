"""
Async engine and session factory construction.

The API process and every Celery task build their own engine: tasks run on a
fresh event loop each, and asyncpg connections cannot cross loops. PostgreSQL
(asyncpg) is the production backend; SQLite (aiosqlite) serves local runs and
tests, where concurrent result writes rely on WAL mode and a busy timeout.
"""

from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from seo_crawler.core.config import Settings, get_settings

SQLITE_BUSY_TIMEOUT_MS = 30_000


class Base(DeclarativeBase):
    pass


def _enable_sqlite_concurrency(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, settings: Settings | None = None, **overrides: Any) -> AsyncEngine:
    """Engine for `url`; connection pool sizing from settings applies to server databases only."""
    settings = settings or get_settings()
    backend = make_url(url).get_backend_name()

    if backend == "sqlite":
        engine = create_async_engine(url, echo=settings.POSTGRES_ECHO, **overrides)
        event.listen(engine.sync_engine, "connect", _enable_sqlite_concurrency)
        return engine

    options: dict[str, Any] = {"echo": settings.POSTGRES_ECHO}
    if "poolclass" not in overrides:
        options.update(
            pool_size=settings.POSTGRES_POOL_SIZE,
            max_overflow=settings.POSTGRES_MAX_OVERFLOW,
            pool_timeout=settings.POSTGRES_POOL_TIMEOUT,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    options.update(overrides)
    return create_async_engine(url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows are handed to API serializers after commit; keep their attributes loaded
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def create_tables(engine: AsyncEngine) -> None:
    """CREATE TABLE IF NOT EXISTS for every model. Alembic owns schema changes after that."""
    from seo_crawler.models import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
