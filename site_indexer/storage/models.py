"""
Data model for site jobs and the pages captured while crawling them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from urllib.parse import urlparse, urlunparse


class SearchStatus(Enum):
    """Status of one site job."""
    INDEXING = "INDEXING"
    INDEXED = "INDEXED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not SearchStatus.INDEXING


class IndexingStatus(Enum):
    """Process-wide indexing status."""
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"


def normalize_site_url(url: str) -> str:
    """Lowercase scheme and host, drop the fragment and end the path with a slash."""
    parsed = urlparse(url.strip())
    path = parsed.path if parsed.path.endswith('/') else parsed.path + '/'
    return urlunparse((parsed.scheme.lower(), parsed.netloc.lower(), path, parsed.params, parsed.query, ''))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SiteJob:
    """One crawl run's state for a single configured site."""
    url: str
    name: str
    status: SearchStatus = SearchStatus.INDEXING
    status_time: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None
    id: Optional[str] = None

    def __post_init__(self):
        self.url = normalize_site_url(self.url)

    def finish(self, status: SearchStatus, last_error: Optional[str] = None):
        """Move the job to a terminal status. Allowed exactly once."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.status.is_terminal:
            raise ValueError(f"Site job {self.url} already finished as {self.status.value}")
        self.status = status
        self.status_time = utcnow()
        self.last_error = last_error

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'id': self.id,
            'url': self.url,
            'name': self.name,
            'status': self.status.value,
            'status_time': self.status_time.isoformat(),
            'last_error': self.last_error
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SiteJob':
        """Create SiteJob from dictionary."""
        return cls(
            id=data.get('id'),
            url=data['url'],
            name=data['name'],
            status=SearchStatus(data['status']),
            status_time=datetime.fromisoformat(data['status_time']),
            last_error=data.get('last_error')
        )


@dataclass(frozen=True)
class PageRecord:
    """The captured result, successful or not, of fetching one URL."""
    site_id: str
    path: str
    code: int
    content: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'site_id': self.site_id,
            'path': self.path,
            'code': self.code,
            'content': self.content,
            'error': self.error
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PageRecord':
        """Create PageRecord from dictionary."""
        return cls(
            site_id=data['site_id'],
            path=data['path'],
            code=data['code'],
            content=data.get('content'),
            error=data.get('error')
        )
