"""
Per-job visited URL sets.

``add`` is an atomic test-and-insert: when several crawl tasks race on the
same URL exactly one of them gets ``True``.
"""

import logging
from typing import Set

import redis.asyncio as redis


class VisitedSet:
    """Visited URLs of one site job, kept in process memory."""

    def __init__(self):
        self._urls: Set[str] = set()

    async def add(self, url: str) -> bool:
        """Insert url. Returns False if it was already present."""
        # No await between the test and the insert, so this cannot interleave
        if url in self._urls:
            return False
        self._urls.add(url)
        return True

    async def contains(self, url: str) -> bool:
        return url in self._urls

    async def size(self) -> int:
        return len(self._urls)

    async def release(self):
        """Called once the job is closed. The in-memory set is simply dropped."""


class RedisVisitedSet(VisitedSet):
    """Visited URLs of one site job, kept in a Redis set keyed by the job id."""

    def __init__(self, redis_client: redis.Redis, key: str):
        super().__init__()
        self.redis_client = redis_client
        self.key = key
        self.logger = logging.getLogger(__name__)

    async def add(self, url: str) -> bool:
        # SADD reports how many members were actually added
        return await self.redis_client.sadd(self.key, url) == 1

    async def contains(self, url: str) -> bool:
        return bool(await self.redis_client.sismember(self.key, url))

    async def size(self) -> int:
        return await self.redis_client.scard(self.key)

    async def release(self):
        await self.redis_client.delete(self.key)
        self.logger.debug(f"Deleted visited set {self.key}")
