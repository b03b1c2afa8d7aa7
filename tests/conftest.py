"""
Shared fixtures: a temp-file SQLite store and an in-memory fake website.
"""

import pytest
import pytest_asyncio

from seo_crawler.core.config import get_settings
from seo_crawler.core.database import build_engine, build_session_factory, create_tables
from seo_crawler.engines.base import JobStatus
from seo_crawler.engines.crawler.control import CrawlControl
from seo_crawler.engines.crawler.runner import CrawlJobRunner
from seo_crawler.services.store import CrawlStore
from tests.fake_site import FakeSite, crawl_config


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'crawler.db'}", get_settings())
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine) -> CrawlStore:
    return CrawlStore(build_session_factory(engine))


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def run_crawl(store: CrawlStore, site: FakeSite):
    """Create a job, run it to completion and return (status, job, results)."""

    async def _run(control: CrawlControl | None = None, **overrides):
        config = crawl_config(**overrides)
        job = await store.create_job(config)
        runner = CrawlJobRunner(store, get_settings(), transport=site.transport)
        status: JobStatus = await runner.run(job.id, config, control)
        job = await store.get_job(job.id)
        results = await store.all_results(job.id)
        return status, job, results

    return _run
