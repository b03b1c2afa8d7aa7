"""
Request-scoped accessors for the long-lived services built in the lifespan.
Everything lives on app.state; nothing is a module-level singleton.
"""

from typing import Annotated

from fastapi import Depends, Request

from seo_crawler.core.redis import CacheManager
from seo_crawler.engines.analytics.engine import CrawlAnalytics
from seo_crawler.engines.crawler.control import CrawlJobManager
from seo_crawler.services.store import CrawlStore


def get_store(request: Request) -> CrawlStore:
    return request.app.state.store


def get_manager(request: Request) -> CrawlJobManager:
    return request.app.state.manager


def get_analytics(request: Request) -> CrawlAnalytics:
    return request.app.state.analytics


def get_cache(request: Request) -> CacheManager | None:
    return getattr(request.app.state, "cache", None)


StoreDep = Annotated[CrawlStore, Depends(get_store)]
ManagerDep = Annotated[CrawlJobManager, Depends(get_manager)]
AnalyticsDep = Annotated[CrawlAnalytics, Depends(get_analytics)]
CacheDep = Annotated[CacheManager | None, Depends(get_cache)]
