# File: tests/test_scheduler.py
import asyncio

import pytest

from conftest import FakeFetcher, SITE, links, make_config
from site_indexer.crawler.scheduler import (
    IndexingScheduler, AlreadyRunningError, NotRunningError, STOPPED_BY_USER
)
from site_indexer.storage.database import DatabaseError, InMemoryStorageBackend
from site_indexer.storage.models import IndexingStatus, SearchStatus
from site_indexer.utils.monitoring import IndexingMonitor, MetricsCollector

OTHER = "http://other.test/"


def small_site():
    return {
        SITE: links("/b", "/c"),
        SITE + "b": links("/", "/c"),
        SITE + "c": links("/missing"),
    }


def chain(length):
    """Pages /0 -> /1 -> ... each linking only to the next one."""
    pages = {SITE: links("/0")}
    for i in range(length):
        pages[f"{SITE}{i}"] = links(f"/{i + 1}")
    return pages


async def new_scheduler(fetcher, database, sites=None, monitor=None, **indexing):
    config = make_config(sites=sites, indexing=indexing)
    scheduler = IndexingScheduler(config, database=database, fetcher=fetcher, monitor=monitor)
    await scheduler.initialize()
    return scheduler


async def stored_paths(database, job):
    return {record.path for record in await database.get_pages(job.id)}


async def test_full_run_indexes_every_reachable_page(memory_db):
    fetcher = FakeFetcher(small_site())
    scheduler = await new_scheduler(fetcher, memory_db, parallelism=4)

    assert scheduler.status is IndexingStatus.STOPPED
    await scheduler.start_indexing()
    assert scheduler.status is IndexingStatus.RUNNING
    await scheduler.wait_until_stopped(timeout=5)

    assert scheduler.status is IndexingStatus.STOPPED
    assert scheduler.runs_completed == 1
    [job] = scheduler.jobs
    assert job.status is SearchStatus.INDEXED
    assert job.last_error is None
    assert job.url == SITE

    stored = await memory_db.get_site_job(job.id)
    assert stored.status is SearchStatus.INDEXED
    assert await stored_paths(memory_db, job) == {"/", "/b", "/c", "/missing"}

    site_stats = scheduler.get_stats()['sites']['Test']
    assert site_stats['pages_fetched'] == 3
    assert site_stats['fetch_errors'] == 1
    assert site_stats['pages_saved'] == 4
    assert site_stats['pages_dropped'] == 0


async def test_site_url_gets_trailing_slash(memory_db):
    fetcher = FakeFetcher({SITE: links()})
    scheduler = await new_scheduler(fetcher, memory_db, sites=[{'url': "http://site.test", 'name': 'Test'}])

    await scheduler.start_indexing()
    await scheduler.wait_until_stopped(timeout=5)

    [job] = scheduler.jobs
    assert job.url == SITE
    assert job.status is SearchStatus.INDEXED


async def test_start_while_running_is_rejected(memory_db):
    fetcher = FakeFetcher(chain(200), delay=0.01)
    scheduler = await new_scheduler(fetcher, memory_db)

    await scheduler.start_indexing()
    jobs = scheduler.jobs

    with pytest.raises(AlreadyRunningError, match="Indexing is already running"):
        await scheduler.start_indexing()

    assert scheduler.jobs == jobs
    assert len(memory_db.backend.jobs) == 1
    assert jobs[0].status is SearchStatus.INDEXING

    scheduler.stop_indexing()
    await scheduler.wait_until_stopped(timeout=5)


async def test_stop_when_not_running_is_rejected(memory_db):
    scheduler = await new_scheduler(FakeFetcher({}), memory_db)

    with pytest.raises(NotRunningError, match="Indexing is not running"):
        scheduler.stop_indexing()


async def test_stop_mid_crawl_fails_jobs_and_keeps_captured_pages(memory_db):
    fetcher = FakeFetcher(chain(200), delay=0.01)
    scheduler = await new_scheduler(fetcher, memory_db)

    await scheduler.start_indexing()
    await asyncio.sleep(0.1)
    scheduler.stop_indexing()
    await scheduler.wait_until_stopped(timeout=5)

    assert scheduler.status is IndexingStatus.STOPPED
    assert scheduler.runs_completed == 1
    [job] = scheduler.jobs
    assert job.status is SearchStatus.FAILED
    assert job.last_error == STOPPED_BY_USER
    assert (await memory_db.get_site_job(job.id)).last_error == STOPPED_BY_USER

    saved = await stored_paths(memory_db, job)
    assert "/" in saved
    assert 0 < len(saved) < 201
    assert len(saved) == scheduler.get_stats()['sites']['Test']['pages_fetched']

    # Nothing keeps fetching after the stop
    fetched = sum(fetcher.fetch_counts.values())
    await asyncio.sleep(0.05)
    assert sum(fetcher.fetch_counts.values()) == fetched


async def test_stop_with_grace_period_lets_tasks_wind_down(memory_db):
    fetcher = FakeFetcher(chain(200), delay=0.01)
    scheduler = await new_scheduler(fetcher, memory_db, stop_grace_period=5)

    await scheduler.start_indexing()
    await asyncio.sleep(0.05)
    scheduler.stop_indexing()
    # Tasks notice the token well before the grace period runs out
    await scheduler.wait_until_stopped(timeout=1)

    [job] = scheduler.jobs
    assert job.status is SearchStatus.FAILED
    assert job.last_error == STOPPED_BY_USER
    assert scheduler.get_stats()['sites']['Test']['pages_discarded'] <= 1


async def test_grace_period_expiry_cancels_stuck_fetches(memory_db):
    fetcher = FakeFetcher(small_site(), hang=asyncio.Event())
    scheduler = await new_scheduler(fetcher, memory_db, stop_grace_period=0.05)

    await scheduler.start_indexing()
    await asyncio.sleep(0.02)
    scheduler.stop_indexing()
    assert scheduler.status is IndexingStatus.RUNNING

    await scheduler.wait_until_stopped(timeout=2)

    [job] = scheduler.jobs
    assert job.status is SearchStatus.FAILED
    assert job.last_error == STOPPED_BY_USER
    assert await memory_db.get_pages(job.id) == []


async def test_restart_replaces_previous_run_data(memory_db):
    fetcher = FakeFetcher(small_site())
    scheduler = await new_scheduler(fetcher, memory_db)

    await scheduler.start_indexing()
    await scheduler.wait_until_stopped(timeout=5)
    [first] = scheduler.jobs

    await scheduler.start_indexing()
    await scheduler.wait_until_stopped(timeout=5)
    [second] = scheduler.jobs

    assert second.id != first.id
    assert scheduler.runs_completed == 2
    assert list(memory_db.backend.jobs) == [second.id]
    assert await memory_db.get_pages(first.id) == []
    assert await stored_paths(memory_db, second) == {"/", "/b", "/c", "/missing"}


async def test_fatal_error_fails_only_its_own_site(memory_db):
    pages = small_site()
    pages[OTHER] = RuntimeError("boom")
    fetcher = FakeFetcher(pages)
    sites = [{'url': SITE, 'name': 'Test'}, {'url': OTHER, 'name': 'Other'}]
    scheduler = await new_scheduler(fetcher, memory_db, sites=sites)

    await scheduler.start_indexing()
    await scheduler.wait_until_stopped(timeout=5)

    jobs = {job.name: job for job in scheduler.jobs}
    assert jobs['Test'].status is SearchStatus.INDEXED
    assert jobs['Other'].status is SearchStatus.FAILED
    assert "boom" in jobs['Other'].last_error
    assert scheduler.status is IndexingStatus.STOPPED


async def test_monitor_receives_run_metrics(memory_db):
    monitor = IndexingMonitor(MetricsCollector())
    scheduler = await new_scheduler(FakeFetcher(small_site()), memory_db, monitor=monitor)

    await scheduler.start_indexing()
    await scheduler.wait_until_stopped(timeout=5)

    values = monitor.metrics.current_values
    assert values['pages_fetched_total'] == 3
    assert values['fetch_errors_total'] == 1
    assert values['pages_saved_total'] == 4
    assert values['jobs_indexed_total'] == 1
    assert b'indexer_pages_fetched_total{site="Test"} 3.0' in monitor.metrics.export_text()


async def test_close_stops_a_running_crawl(memory_db):
    scheduler = await new_scheduler(FakeFetcher(chain(200), delay=0.01), memory_db)

    await scheduler.start_indexing()
    await asyncio.sleep(0.02)
    await scheduler.close()

    assert scheduler.status is IndexingStatus.STOPPED
    assert scheduler.jobs[0].status is SearchStatus.FAILED


async def test_real_fetcher_crawls_each_page_once(site_server, memory_db):
    site_server.add("/", links("/b", "/c"))
    site_server.add("/b", links("/", "/c", "/logo.png"))
    site_server.add("/c", links("/b", "/missing"))
    config = make_config(sites=[{'url': site_server.url("/"), 'name': 'Local'}])
    scheduler = IndexingScheduler(config, database=memory_db)
    await scheduler.initialize()

    try:
        await scheduler.start_indexing()
        await scheduler.wait_until_stopped(timeout=10)

        [job] = scheduler.jobs
        assert job.status is SearchStatus.INDEXED
        assert dict(site_server.hits) == {"/": 1, "/b": 1, "/c": 1, "/missing": 1}

        records = {record.path: record for record in await memory_db.get_pages(job.id)}
        assert set(records) == {"/", "/b", "/c", "/missing"}
        assert records["/missing"].code == 404
        assert records["/b"].code == 200
    finally:
        await scheduler.close()


async def test_storage_failure_while_preparing_aborts_the_start(memory_db):
    class RefusingBackend(InMemoryStorageBackend):
        async def create_site_job(self, job):
            if job.url == OTHER:
                raise DatabaseError("keyspace unavailable")
            return await super().create_site_job(job)

    memory_db.backend = RefusingBackend()
    sites = [{'url': SITE, 'name': 'Test'}, {'url': OTHER, 'name': 'Other'}]
    scheduler = await new_scheduler(FakeFetcher(small_site()), memory_db, sites=sites)

    with pytest.raises(DatabaseError):
        await scheduler.start_indexing()

    assert scheduler.status is IndexingStatus.STOPPED
    [stored] = memory_db.backend.jobs.values()
    assert stored.url == SITE
    assert stored.status is SearchStatus.FAILED
    assert "keyspace unavailable" in stored.last_error


class StatusWriteFailingBackend(InMemoryStorageBackend):
    """Fails the first ``failures`` status writes, or all of them when failures is None."""

    def __init__(self, failures=None):
        super().__init__()
        self.failures = failures
        self.status_attempts = 0

    async def update_job_status(self, job_id, status, last_error=None):
        self.status_attempts += 1
        if self.failures is None or self.status_attempts <= self.failures:
            raise DatabaseError("write timeout")
        await super().update_job_status(job_id, status, last_error)


async def test_terminal_status_write_is_retried(memory_db):
    backend = StatusWriteFailingBackend(failures=2)
    memory_db.backend = backend
    scheduler = await new_scheduler(FakeFetcher(small_site()), memory_db)

    await scheduler.start_indexing()
    await scheduler.wait_until_stopped(timeout=5)

    [job] = scheduler.jobs
    assert backend.status_attempts == 3
    assert (await memory_db.get_site_job(job.id)).status is SearchStatus.INDEXED


async def test_unwritable_status_still_flushes_pages(memory_db):
    memory_db.backend = StatusWriteFailingBackend()
    scheduler = await new_scheduler(FakeFetcher(small_site()), memory_db)

    await scheduler.start_indexing()
    await scheduler.wait_until_stopped(timeout=5)

    [job] = scheduler.jobs
    assert job.status is SearchStatus.INDEXED
    assert memory_db.backend.status_attempts == 3
    assert await stored_paths(memory_db, job) == {"/", "/b", "/c", "/missing"}
    assert scheduler.status is IndexingStatus.STOPPED


async def test_pages_are_stored_while_the_crawl_is_still_running(memory_db):
    fetcher = FakeFetcher(chain(200), delay=0.01)
    scheduler = await new_scheduler(fetcher, memory_db)

    await scheduler.start_indexing()
    await asyncio.sleep(0.15)

    assert scheduler.status is IndexingStatus.RUNNING
    [job] = scheduler.jobs
    assert job.status is SearchStatus.INDEXING
    assert "/" in await stored_paths(memory_db, job)

    scheduler.stop_indexing()
    await scheduler.wait_until_stopped(timeout=5)


async def test_unexpected_finalization_error_still_stops_the_saver(memory_db):
    class BrokenStatusBackend(InMemoryStorageBackend):
        async def update_job_status(self, job_id, status, last_error=None):
            raise RuntimeError("driver bug")

    memory_db.backend = BrokenStatusBackend()
    scheduler = await new_scheduler(FakeFetcher(small_site()), memory_db)

    await scheduler.start_indexing()
    await scheduler.wait_until_stopped(timeout=5)

    [job] = scheduler.jobs
    assert scheduler.status is IndexingStatus.STOPPED
    assert await stored_paths(memory_db, job) == {"/", "/b", "/c", "/missing"}
    assert isinstance(scheduler._runs[0].task.exception(), RuntimeError)
