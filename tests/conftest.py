# File: tests/conftest.py
import asyncio
from collections import Counter
from typing import AsyncIterator, Dict, Optional

import pytest
import pytest_asyncio
from aiohttp import web

from site_indexer.crawler.crawl_task import CrawlContext, CancellationToken
from site_indexer.crawler.fetcher import FetchError, FetchResult
from site_indexer.crawler.parser import LinkExtractor
from site_indexer.crawler.visited import VisitedSet
from site_indexer.storage.database import DatabaseManager
from site_indexer.storage.models import SiteJob
from site_indexer.storage.page_saver import PageBuffer
from site_indexer.utils.config import parse_config, DatabaseConfig
from site_indexer.utils.logger import get_crawler_logger

SITE = "http://site.test/"


def links(*hrefs: str) -> str:
    """Render a minimal HTML page linking to *hrefs*."""
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in hrefs)
    return f"<html><body>{anchors}</body></html>"


class FakeFetcher:
    """
    In-process stand-in for WebFetcher.

    ``pages`` maps absolute URLs to HTML, or to an exception instance that
    is raised when the URL is fetched. Unknown URLs answer with a 404.
    """

    def __init__(self, pages: Dict[str, object], delay: float = 0.0,
                 hang: Optional[asyncio.Event] = None):
        self.pages = pages
        self.delay = delay
        self.hang = hang
        self.fetch_counts: Counter = Counter()
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, url: str) -> FetchResult:
        self.fetch_counts[url] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.hang is not None:
                await self.hang.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        value = self.pages.get(url)
        if isinstance(value, BaseException):
            raise value
        if value is None:
            raise FetchError(url, 404, "HTTP 404")
        return FetchResult(url=url, status_code=200, content=value)

    def get_stats(self) -> dict:
        return {'total_requests': sum(self.fetch_counts.values())}

    async def close(self):
        pass


def make_config(sites=None, **sections):
    """Build a Config with fast saver settings and an in-memory database."""
    data = {
        'indexing': {'sites': sites or [{'url': SITE, 'name': 'Test'}]},
        'saver': {'batch_size': 10, 'flush_interval': 0.01, 'retry_attempts': 2, 'retry_delay': 0},
        'database': {'type': 'memory'},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return parse_config(data)


def make_context(fetcher, site_url: str = SITE, parallelism: int = 4) -> CrawlContext:
    job = SiteJob(url=site_url, name="Test", id="job-1")
    return CrawlContext(
        job=job,
        visited=VisitedSet(),
        buffer=PageBuffer(),
        fetcher=fetcher,
        extractor=LinkExtractor(job.url),
        token=CancellationToken(),
        semaphore=asyncio.Semaphore(parallelism),
        logger=get_crawler_logger("tests", site="Test")
    )


@pytest_asyncio.fixture
async def memory_db() -> AsyncIterator[DatabaseManager]:
    database = DatabaseManager(DatabaseConfig(type='memory'))
    await database.initialize()
    yield database
    await database.close()


class FakeSiteServer:
    """aiohttp application serving canned responses and counting hits per path."""

    def __init__(self):
        self.routes: Dict[str, tuple] = {}
        self.hits: Counter = Counter()
        self.request_headers: Dict[str, dict] = {}
        self.base_url = ""
        self.app = web.Application()
        self.app.router.add_get("/{tail:.*}", self.handle)

    def add(self, path: str, body, status: int = 200, content_type: str = "text/html"):
        self.routes[path] = (status, body, content_type)

    def url(self, path: str = "/") -> str:
        return self.base_url + path

    async def handle(self, request: web.Request) -> web.Response:
        self.hits[request.path] += 1
        self.request_headers[request.path] = dict(request.headers)

        if request.path not in self.routes:
            return web.Response(status=404, text="not found")

        status, body, content_type = self.routes[request.path]
        if isinstance(body, bytes):
            return web.Response(status=status, body=body, content_type=content_type)
        return web.Response(status=status, text=body, content_type=content_type)


@pytest_asyncio.fixture
async def site_server(unused_tcp_port: int) -> AsyncIterator[FakeSiteServer]:
    server = FakeSiteServer()
    runner = web.AppRunner(server.app)
    await runner.setup()
    site = web.TCPSite(runner, "localhost", unused_tcp_port)
    await site.start()
    server.base_url = f"http://localhost:{unused_tcp_port}"
    try:
        yield server
    finally:
        await runner.cleanup()


@pytest.fixture()
def fetcher_config():
    return make_config().fetcher
