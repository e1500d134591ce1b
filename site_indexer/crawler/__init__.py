"""
Crawl engine components.
"""

from .fetcher import WebFetcher, FetchResult, FetchError
from .parser import LinkExtractor, normalize_url
from .visited import VisitedSet, RedisVisitedSet
from .crawl_task import CrawlTask, CrawlContext, CrawlFatalError, CancellationToken
from .status_monitor import StatusMonitor
from .scheduler import IndexingScheduler, IndexingStateError, AlreadyRunningError, NotRunningError

__all__ = [
    'WebFetcher', 'FetchResult', 'FetchError',
    'LinkExtractor', 'normalize_url',
    'VisitedSet', 'RedisVisitedSet',
    'CrawlTask', 'CrawlContext', 'CrawlFatalError', 'CancellationToken',
    'StatusMonitor',
    'IndexingScheduler', 'IndexingStateError', 'AlreadyRunningError', 'NotRunningError'
]
