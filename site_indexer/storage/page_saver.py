"""
Streaming persistence of discovered pages.

Crawl tasks put page records into a ``PageBuffer``; a ``PageSaver`` running
next to the crawl drains the buffer in batches and writes them to storage.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, List, Optional

from .database import DatabaseManager, DatabaseError
from .models import PageRecord
from ..utils.config import SaverConfig
from ..utils.monitoring import IndexingMonitor


class PageBuffer:
    """
    Page records waiting to be saved.

    None of the methods suspend while touching the queue, so producers and the
    draining saver never see a half-applied update.
    """

    def __init__(self):
        self._records: Deque[PageRecord] = deque()
        self._available = asyncio.Event()

    def __len__(self) -> int:
        return len(self._records)

    def put(self, record: PageRecord):
        self._records.append(record)
        self._available.set()

    def drain(self, limit: int) -> List[PageRecord]:
        """Remove and return up to limit records in arrival order."""
        batch = []
        while self._records and len(batch) < limit:
            batch.append(self._records.popleft())
        if not self._records:
            self._available.clear()
        return batch

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until records are available or wakeup() is called."""
        try:
            await asyncio.wait_for(self._available.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def wakeup(self):
        self._available.set()


class PageSaver:
    """Persists one site job's page buffer until the crawl has finished."""

    def __init__(self, buffer: PageBuffer, database: DatabaseManager, config: SaverConfig,
                 site_name: str = '', monitor: Optional[IndexingMonitor] = None,
                 logger: Optional[logging.LoggerAdapter] = None):
        self.buffer = buffer
        self.database = database
        self.batch_size = config.batch_size
        self.flush_interval = config.flush_interval
        self.retry_attempts = config.retry_attempts
        self.retry_delay = config.retry_delay
        self.site_name = site_name
        self.monitor = monitor
        self.logger = logger or logging.getLogger(__name__)

        self.pages_saved = 0
        self.pages_dropped = 0
        self._finished = False

    def finish(self):
        """Tell the saver no more records will be produced."""
        self._finished = True
        self.buffer.wakeup()

    async def run(self):
        """Drain and persist batches; after finish(), drain until the buffer is empty and exit."""
        self.logger.debug("Page saver started")
        while True:
            # Read the flag before draining: an empty drain after that proves nothing is left
            finished = self._finished
            batch = self.buffer.drain(self.batch_size)

            if batch:
                await self._save_batch(batch)
            elif finished:
                break
            else:
                await self.buffer.wait(self.flush_interval)

        self.logger.info(f"Page saver finished: {self.pages_saved} saved, {self.pages_dropped} dropped")

    async def _save_batch(self, batch: List[PageRecord]):
        """Write a batch, retrying on storage errors, dropping it when retries run out."""
        for attempt in range(self.retry_attempts + 1):
            try:
                await self.database.save_all_pages(batch)
            except DatabaseError as e:
                if attempt == self.retry_attempts:
                    self.pages_dropped += len(batch)
                    if self.monitor:
                        self.monitor.record_pages_dropped(self.site_name, len(batch))
                    self.logger.error(f"Dropped {len(batch)} pages after {attempt + 1} attempts: {e}")
                    return

                if self.monitor:
                    self.monitor.record_save_retry(self.site_name)
                delay = self.retry_delay * (attempt + 1)
                self.logger.warning(
                    f"Saving {len(batch)} pages failed ({attempt + 1}/{self.retry_attempts + 1}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                self.pages_saved += len(batch)
                if self.monitor:
                    self.monitor.record_pages_saved(self.site_name, len(batch))
                self.logger.debug(f"Saved {len(batch)} pages")
                return
