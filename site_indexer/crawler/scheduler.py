"""
Indexing scheduler that starts and stops crawling of every configured site.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import psutil
import redis.asyncio as redis

from .crawl_task import CrawlTask, CrawlContext, CancellationToken, JobStats
from .fetcher import WebFetcher
from .parser import LinkExtractor
from .status_monitor import StatusMonitor
from .visited import VisitedSet, RedisVisitedSet
from ..storage.database import DatabaseManager, DatabaseError
from ..storage.models import SiteJob, SearchStatus, IndexingStatus
from ..storage.page_saver import PageBuffer, PageSaver
from ..utils.config import Config, SiteConfig
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import IndexingMonitor


STOPPED_BY_USER = "Indexing stopped by user"


class IndexingStateError(Exception):
    """start/stop called in the wrong indexing state."""
    pass


class AlreadyRunningError(IndexingStateError):
    def __init__(self):
        super().__init__("Indexing is already running")


class NotRunningError(IndexingStateError):
    def __init__(self):
        super().__init__("Indexing is not running")


@dataclass
class SiteRun:
    """Runtime state of one site job."""
    job: SiteJob
    context: CrawlContext
    saver: PageSaver
    crawl_task: Optional[asyncio.Task] = None
    task: Optional[asyncio.Task] = None

    @property
    def stats(self) -> JobStats:
        return self.context.stats

    def stats_dict(self) -> dict:
        return {
            **self.stats.to_dict(),
            'pages_saved': self.saver.pages_saved,
            'pages_dropped': self.saver.pages_dropped
        }


class IndexingScheduler:
    """
    Owns an indexing run: one crawl pool and one page saver per configured
    site, plus the process-wide indexing status.
    """

    def __init__(self, config: Config,
                 database: Optional[DatabaseManager] = None,
                 fetcher: Optional[WebFetcher] = None,
                 redis_client: Optional[redis.Redis] = None,
                 monitor: Optional[IndexingMonitor] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.database = database
        self.fetcher = fetcher
        self.redis_client = redis_client
        self.monitor = monitor

        self.parallelism = config.indexing.parallelism or psutil.cpu_count() or 1
        self.stop_grace_period = config.indexing.stop_grace_period

        self._status = IndexingStatus.STOPPED
        self._start_lock = asyncio.Lock()
        self._runs: List[SiteRun] = []
        self._status_monitor: Optional[StatusMonitor] = None
        self._hard_cancel: Optional[asyncio.TimerHandle] = None
        self.last_run_duration: Optional[float] = None
        self.runs_completed = 0

    async def initialize(self):
        """Create whatever collaborators were not injected."""
        try:
            if self.database is None:
                self.database = DatabaseManager(self.config.database)
                await self.database.initialize()

            if self.fetcher is None:
                self.fetcher = WebFetcher(self.config.fetcher)
                await self.fetcher.start()

            if self.config.redis.enabled and self.redis_client is None:
                self.redis_client = redis.Redis(
                    host=self.config.redis.host,
                    port=self.config.redis.port,
                    db=self.config.redis.db,
                    password=self.config.redis.password,
                    decode_responses=True
                )
                await self.redis_client.ping()
                self.logger.info("Redis connection established")

            self.logger.info(f"Indexing scheduler initialized "
                             f"({len(self.config.indexing.sites)} sites, parallelism {self.parallelism})")

        except Exception as e:
            self.logger.error(f"Failed to initialize indexing scheduler: {e}")
            raise

    @property
    def status(self) -> IndexingStatus:
        return self._status

    @property
    def jobs(self) -> List[SiteJob]:
        """Site jobs of the current or most recent run."""
        return [run.job for run in self._runs]

    async def start_indexing(self) -> bool:
        """
        Start indexing every configured site.

        Returns as soon as the crawls are launched; crawling continues in the
        background until it completes or stop_indexing() is called.

        Raises:
            AlreadyRunningError: if a run is in progress
            DatabaseError: if the site jobs could not be prepared
        """
        async with self._start_lock:
            if self._status is IndexingStatus.RUNNING:
                raise AlreadyRunningError()

            runs = await self._prepare_runs(self.config.indexing.sites)

            self._runs = runs
            self._status = IndexingStatus.RUNNING
            if self.monitor:
                self.monitor.set_running(True)

            for run in runs:
                run.task = asyncio.create_task(self._run_site(run), name=f"site-job-{run.job.name}")

            self._status_monitor = StatusMonitor([run.task for run in runs], self._on_stopped)
            self._status_monitor.start()

        self.logger.info(f"Indexing started for {len(runs)} sites")
        return True

    def stop_indexing(self) -> bool:
        """
        Ask every running crawl to stop.

        Crawl tasks notice the request at their next checkpoint; pools still
        busy after the grace period are cancelled outright. Returns without
        waiting for either.

        Raises:
            NotRunningError: if no run is in progress
        """
        if self._status is IndexingStatus.STOPPED:
            raise NotRunningError()

        self.logger.info("Stopping indexing...")
        for run in self._runs:
            run.context.token.cancel()

        if self.stop_grace_period > 0:
            if self._hard_cancel is None:
                loop = asyncio.get_running_loop()
                self._hard_cancel = loop.call_later(self.stop_grace_period, self._cancel_pools)
        else:
            self._cancel_pools()
        return True

    async def wait_until_stopped(self, timeout: Optional[float] = None):
        """Wait until the current run, if any, has fully stopped."""
        if self._status_monitor is not None:
            await self._status_monitor.wait(timeout)

    def _cancel_pools(self):
        self._hard_cancel = None
        for run in self._runs:
            if run.crawl_task is not None and not run.crawl_task.done():
                run.crawl_task.cancel()

    async def _prepare_runs(self, sites: List[SiteConfig]) -> List[SiteRun]:
        runs: List[SiteRun] = []
        try:
            for site in sites:
                runs.append(await self._prepare_site(site))
        except DatabaseError as e:
            self.logger.error(f"Failed to prepare site jobs: {e}")
            for run in runs:
                await self._finish_job(run, SearchStatus.FAILED, f"Indexing could not start: {e}")
            raise
        return runs

    async def _prepare_site(self, site: SiteConfig) -> SiteRun:
        """Replace the stored data of a site with a fresh job and wire up its crawl."""
        await self.database.delete_site_data(site.url)

        job = SiteJob(url=site.url, name=site.name)
        job.id = await self.database.create_site_job(job)

        logger = get_crawler_logger(__name__, site=job.name, job_id=job.id)
        if self.redis_client is not None:
            visited = RedisVisitedSet(self.redis_client, f"{self.config.redis.visited_key_prefix}{job.id}")
        else:
            visited = VisitedSet()

        buffer = PageBuffer()
        context = CrawlContext(
            job=job,
            visited=visited,
            buffer=buffer,
            fetcher=self.fetcher,
            extractor=LinkExtractor(job.url),
            token=CancellationToken(),
            semaphore=asyncio.Semaphore(self.parallelism),
            logger=logger,
            monitor=self.monitor
        )
        saver = PageSaver(buffer, self.database, self.config.saver,
                          site_name=job.name, monitor=self.monitor, logger=logger)
        return SiteRun(job=job, context=context, saver=saver)

    async def _run_site(self, run: SiteRun):
        """Crawl one site next to its page saver, then finalize the job."""
        logger = run.context.logger
        logger.info(f"Indexing {run.job.url}")

        saver_task = asyncio.create_task(run.saver.run(), name=f"page-saver-{run.job.name}")
        try:
            run.crawl_task = asyncio.create_task(
                CrawlTask(run.job.url, run.context).run(), name=f"crawl-{run.job.name}"
            )
            await asyncio.wait([run.crawl_task])

            status, error = self._outcome(run)
            await self._finish_job(run, status, error)
        finally:
            run.saver.finish()
            try:
                await saver_task
            except Exception as e:
                logger.error(f"Page saver crashed: {e}", exc_info=True)

            try:
                logger.log_job_stat('urls_visited', await run.context.visited.size())
                await run.context.visited.release()
            except redis.RedisError as e:
                logger.warning(f"Could not release visited set: {e}")

        logger.info(f"Site job finished as {run.job.status.value}")
        for stat_name, value in run.stats_dict().items():
            logger.log_job_stat(stat_name, value)

    def _outcome(self, run: SiteRun):
        task = run.crawl_task
        if task.cancelled():
            return SearchStatus.FAILED, STOPPED_BY_USER

        error = task.exception()
        if error is not None:
            return SearchStatus.FAILED, str(error)
        if run.context.token.cancelled:
            return SearchStatus.FAILED, STOPPED_BY_USER
        return SearchStatus.INDEXED, None

    async def _finish_job(self, run: SiteRun, status: SearchStatus, error: Optional[str]):
        """Set the terminal status and store it, retrying storage errors like page batches."""
        run.job.finish(status, error)
        if self.monitor:
            self.monitor.record_job_finished(status.value)

        attempts = self.config.saver.retry_attempts + 1
        for attempt in range(attempts):
            try:
                await self.database.update_job_status(run.job.id, status, error)
                return
            except DatabaseError as e:
                if attempt + 1 == attempts:
                    run.context.logger.error(
                        f"Could not store status {status.value} after {attempts} attempts: {e}"
                    )
                    return
                delay = self.config.saver.retry_delay * (attempt + 1)
                run.context.logger.warning(
                    f"Storing status {status.value} failed ({attempt + 1}/{attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)

    def _on_stopped(self, elapsed: float):
        if self._status is IndexingStatus.STOPPED:
            return

        if self._hard_cancel is not None:
            self._hard_cancel.cancel()
            self._hard_cancel = None

        self._status = IndexingStatus.STOPPED
        self.last_run_duration = elapsed
        self.runs_completed += 1
        if self.monitor:
            self.monitor.set_running(False)
            self.monitor.record_run_duration(elapsed)
        self._log_final_stats()

    def _log_final_stats(self):
        """Log final indexing statistics."""
        self.logger.info("=== INDEXING STOPPED ===")
        self.logger.info(f"Total time: {self.last_run_duration:.2f} seconds")
        for run in self._runs:
            self.logger.info(f"{run.job.name}: {run.job.status.value} {run.stats_dict()}")
        if self.fetcher is not None and hasattr(self.fetcher, 'get_stats'):
            self.logger.info(f"Fetcher stats: {self.fetcher.get_stats()}")

    def get_stats(self) -> Dict:
        """Get current indexing statistics."""
        return {
            'status': self._status.value,
            'runs_completed': self.runs_completed,
            'last_run_duration': self.last_run_duration,
            'sites': {
                run.job.name: {
                    'url': run.job.url,
                    'status': run.job.status.value,
                    'last_error': run.job.last_error,
                    **run.stats_dict()
                }
                for run in self._runs
            }
        }

    async def close(self):
        """Stop a running crawl and close all connections."""
        try:
            if self._status is IndexingStatus.RUNNING:
                self.stop_indexing()
                await self.wait_until_stopped()

            if self.fetcher:
                await self.fetcher.close()

            if self.database:
                await self.database.close()

            if self.redis_client:
                await self.redis_client.aclose()

            self.logger.info("Indexing scheduler closed")

        except Exception as e:
            self.logger.error(f"Error during cleanup: {e}")
