"""
Watches the site jobs of an indexing run and reports when all of them are done.
"""

import asyncio
import logging
import time
from typing import Callable, Iterable, Optional


class StatusMonitor:
    """
    Fires ``on_stopped`` exactly once, after every watched site task has
    terminated, whether it completed, failed or was cancelled.
    """

    def __init__(self, site_tasks: Iterable[asyncio.Task],
                 on_stopped: Callable[[float], None]):
        self.site_tasks = list(site_tasks)
        self.on_stopped = on_stopped
        self.start_time = time.monotonic()
        self.elapsed: Optional[float] = None
        self.stopped = asyncio.Event()
        self.logger = logging.getLogger(__name__)
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._watch(), name="indexing-status-monitor")
        return self._task

    async def _watch(self):
        if self.site_tasks:
            await asyncio.wait(self.site_tasks)

        self.elapsed = time.monotonic() - self.start_time
        minutes, seconds = divmod(int(self.elapsed), 60)
        self.logger.info(f"Indexing finished in {minutes} min {seconds} sec")

        try:
            self.on_stopped(self.elapsed)
        finally:
            self.stopped.set()

    async def wait(self, timeout: Optional[float] = None):
        await asyncio.wait_for(self.stopped.wait(), timeout)
