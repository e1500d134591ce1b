"""
Recursive fork-join crawl tasks.

A ``CrawlTask`` fetches one page, records it, forks a child task for every
unvisited same-site link and joins all of them before it completes. The root
task of a site therefore only finishes once the whole reachable site has been
walked (or the walk was cancelled).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .fetcher import WebFetcher, FetchError
from .parser import LinkExtractor, normalize_url, relative_path
from .visited import VisitedSet
from ..storage.models import SiteJob, PageRecord
from ..storage.page_saver import PageBuffer
from ..utils.logger import IndexerLogAdapter
from ..utils.monitoring import IndexingMonitor


class CrawlFatalError(Exception):
    """Unexpected failure inside a crawl task. Fails the owning site job."""

    def __init__(self, url: str, cause: BaseException):
        super().__init__(f"Crawl of {url} failed: {cause!r}")
        self.url = url
        self.cause = cause


class CancellationToken:
    """Cooperative cancellation flag shared by every task of one site job."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class JobStats:
    """Counters for one site job."""
    pages_fetched: int = 0
    fetch_errors: int = 0
    pages_discarded: int = 0

    def to_dict(self) -> dict:
        return {
            'pages_fetched': self.pages_fetched,
            'fetch_errors': self.fetch_errors,
            'pages_discarded': self.pages_discarded
        }


@dataclass
class CrawlContext:
    """Everything the tasks of one site job share."""
    job: SiteJob
    visited: VisitedSet
    buffer: PageBuffer
    fetcher: WebFetcher
    extractor: LinkExtractor
    token: CancellationToken
    semaphore: asyncio.Semaphore
    logger: IndexerLogAdapter
    stats: JobStats = field(default_factory=JobStats)
    monitor: Optional[IndexingMonitor] = None


class CrawlTask:
    """Fetch one page and crawl the unvisited links it contains."""

    def __init__(self, url: str, context: CrawlContext):
        self.url = url
        self.context = context

    async def run(self):
        """
        Crawl the subtree rooted at this task's URL.

        Raises:
            CrawlFatalError: if an unexpected error happened anywhere in the subtree
        """
        try:
            children = await self._visit()
        except (CrawlFatalError, asyncio.CancelledError):
            raise
        except Exception as e:
            self.context.logger.error(f"Unexpected error crawling {self.url}: {e}", exc_info=True)
            raise CrawlFatalError(self.url, e) from e

        if children:
            await self._join(children)

    async def _visit(self) -> List['CrawlTask']:
        """Fetch and record the page. Returns the child tasks to fork."""
        ctx = self.context
        if ctx.token.cancelled:
            return []

        url = normalize_url(self.url, ctx.job.url)
        if not await ctx.visited.add(url):
            return []

        try:
            async with ctx.semaphore:
                result = await ctx.fetcher.fetch(url)
        except FetchError as e:
            self._record_failure(url, e)
            return []

        if ctx.token.cancelled:
            ctx.stats.pages_discarded += 1
            return []

        ctx.buffer.put(PageRecord(
            site_id=ctx.job.id,
            path=relative_path(url, ctx.job.url),
            code=result.status_code,
            content=result.content
        ))
        ctx.stats.pages_fetched += 1
        if ctx.monitor:
            ctx.monitor.record_page_fetched(ctx.job.name)

        children = []
        for link in ctx.extractor.extract_links(url, result.content):
            # Cheap pre-check; the child's own add() is the authoritative one
            if not await ctx.visited.contains(link):
                children.append(CrawlTask(link, ctx))
        return children

    def _record_failure(self, url: str, error: FetchError):
        ctx = self.context
        if ctx.token.cancelled:
            ctx.stats.pages_discarded += 1
            return

        ctx.logger.log_page_event(logging.INFO, url, f"Failed to fetch {url}: {error.message}")
        ctx.buffer.put(PageRecord(
            site_id=ctx.job.id,
            path=relative_path(url, ctx.job.url),
            code=error.status_code,
            error=error.message
        ))
        ctx.stats.fetch_errors += 1
        if ctx.monitor:
            ctx.monitor.record_fetch_error(ctx.job.name)

    async def _join(self, children: List['CrawlTask']):
        """Fork every child and wait for all of them, then surface the first fatal error."""
        forked = [asyncio.create_task(child.run()) for child in children]
        results = await asyncio.gather(*forked, return_exceptions=True)

        for result in results:
            if isinstance(result, CrawlFatalError):
                raise result
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
