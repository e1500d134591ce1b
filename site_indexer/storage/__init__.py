"""
Storage layer for site jobs and page records.
"""

from .database import DatabaseManager, DatabaseError, PersistenceError
from .models import SiteJob, PageRecord, SearchStatus, IndexingStatus
from .page_saver import PageBuffer, PageSaver

__all__ = [
    'DatabaseManager', 'DatabaseError', 'PersistenceError',
    'SiteJob', 'PageRecord', 'SearchStatus', 'IndexingStatus',
    'PageBuffer', 'PageSaver'
]
