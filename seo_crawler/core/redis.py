"""
Optional Redis connection for cross-process crawl state.

Redis only carries two kinds of keys: a progress hash per running job and a
cancel flag per job. Both expire on their own, so losing Redis loses live
progress but never job data, which stays in the database.
"""

from typing import Any

import redis.asyncio as aioredis
import structlog

from seo_crawler.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)

KEY_NAMESPACE = "crawler"

_shared_pool: aioredis.ConnectionPool | None = None


def _connection_options(settings: Settings) -> dict[str, Any]:
    return {
        "socket_timeout": settings.REDIS_SOCKET_TIMEOUT,
        "socket_connect_timeout": 5.0,
        "decode_responses": True,
    }


async def get_redis_client() -> aioredis.Redis | None:
    """Client on the process-wide pool used by the API. None when REDIS_DSN is unset."""
    global _shared_pool
    settings = get_settings()
    if settings.REDIS_DSN is None:
        return None
    if _shared_pool is None:
        _shared_pool = aioredis.ConnectionPool.from_url(
            str(settings.REDIS_DSN),
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            retry_on_timeout=True,
            health_check_interval=30,
            **_connection_options(settings),
        )
        logger.debug("redis_pool_created", max_connections=settings.REDIS_MAX_CONNECTIONS)
    return aioredis.Redis(connection_pool=_shared_pool)


def new_redis_client() -> aioredis.Redis | None:
    """
    A client owning its connections.
    Celery tasks run each job on a fresh event loop, so they cannot share the pool.
    """
    settings = get_settings()
    if settings.REDIS_DSN is None:
        return None
    return aioredis.Redis.from_url(str(settings.REDIS_DSN), **_connection_options(settings))


async def close_redis_pool() -> None:
    global _shared_pool
    if _shared_pool is not None:
        await _shared_pool.disconnect()
        _shared_pool = None


class CacheManager:
    """
    Namespaced, always-expiring key access.

    Every write takes a TTL: a crawler process that dies mid-job must not leave
    progress or cancel keys behind forever.
    """

    def __init__(self, redis: aioredis.Redis, namespace: str = KEY_NAMESPACE):
        self.redis = redis
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def get(self, key: str) -> str | None:
        return await self.redis.get(self._key(key))

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self.redis.set(self._key(key), value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))

    async def exists(self, key: str) -> bool:
        return await self.redis.exists(self._key(key)) > 0

    async def set_hash(self, key: str, mapping: dict[str, str], ttl: int) -> None:
        """Replace the hash in one transaction so readers never see a half-written snapshot."""
        full_key = self._key(key)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(full_key)
            pipe.hset(full_key, mapping=mapping)
            pipe.expire(full_key, ttl)
            await pipe.execute()

    async def get_hash(self, key: str) -> dict[str, str]:
        return await self.redis.hgetall(self._key(key))
