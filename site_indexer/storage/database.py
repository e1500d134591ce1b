"""
Database storage layer for site jobs and crawled pages.
Supports in-memory, file-based and Cassandra storage.
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Optional, Dict, List, Any, Iterable

from cassandra import DependencyException

try:
    from cassandra.cluster import Cluster
    from cassandra.concurrent import execute_concurrent_with_args
    from cassandra.policies import DCAwareRoundRobinPolicy
    CASSANDRA_AVAILABLE = True
except (ImportError, DependencyException):
    # The driver needs an event loop reactor (libev or asyncore) to load
    CASSANDRA_AVAILABLE = False

from .models import SiteJob, PageRecord, SearchStatus, normalize_site_url, utcnow
from ..utils.config import DatabaseConfig


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


class PersistenceError(DatabaseError):
    """Raised when a batch of page records could not be written."""
    pass


class StorageBackend:
    """Abstract base class for storage backends."""

    async def initialize(self):
        """Initialize the storage backend."""
        raise NotImplementedError

    async def delete_site_data(self, url: str) -> int:
        """Delete every site job stored for url, with its pages. Returns the number of jobs removed."""
        raise NotImplementedError

    async def create_site_job(self, job: SiteJob) -> str:
        """Persist a new site job and return its id."""
        raise NotImplementedError

    async def update_job_status(self, job_id: str, status: SearchStatus,
                                last_error: Optional[str] = None):
        """Set the status of a stored site job."""
        raise NotImplementedError

    async def save_all_pages(self, records: List[PageRecord]):
        """Persist a batch of page records. Raises PersistenceError on failure."""
        raise NotImplementedError

    async def get_site_job(self, job_id: str) -> Optional[SiteJob]:
        """Retrieve a site job by id."""
        raise NotImplementedError

    async def get_pages(self, site_id: str) -> List[PageRecord]:
        """Retrieve all pages stored for a site job."""
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        raise NotImplementedError

    async def close(self):
        """Close storage connections."""
        raise NotImplementedError


class InMemoryStorageBackend(StorageBackend):
    """Keeps everything in process memory. Used for dry runs and tests."""

    def __init__(self):
        self.jobs: Dict[str, SiteJob] = {}
        self.pages: Dict[str, Dict[str, PageRecord]] = {}
        self.stats = {'total_stored': 0}

    async def initialize(self):
        pass

    async def delete_site_data(self, url: str) -> int:
        url = normalize_site_url(url)
        doomed = [job_id for job_id, job in self.jobs.items() if job.url == url]
        for job_id in doomed:
            del self.jobs[job_id]
            self.pages.pop(job_id, None)
        return len(doomed)

    async def create_site_job(self, job: SiteJob) -> str:
        job_id = uuid.uuid4().hex
        self.jobs[job_id] = SiteJob.from_dict({**job.to_dict(), 'id': job_id})
        self.pages[job_id] = {}
        return job_id

    async def update_job_status(self, job_id: str, status: SearchStatus,
                                last_error: Optional[str] = None):
        job = self.jobs.get(job_id)
        if job is None:
            raise DatabaseError(f"Unknown site job: {job_id}")
        job.status = status
        job.status_time = utcnow()
        job.last_error = last_error

    async def save_all_pages(self, records: List[PageRecord]):
        for record in records:
            if record.site_id not in self.pages:
                raise PersistenceError(f"Unknown site job: {record.site_id}")
            self.pages[record.site_id][record.path] = record
        self.stats['total_stored'] += len(records)

    async def get_site_job(self, job_id: str) -> Optional[SiteJob]:
        return self.jobs.get(job_id)

    async def get_pages(self, site_id: str) -> List[PageRecord]:
        return list(self.pages.get(site_id, {}).values())

    async def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'site_jobs': len(self.jobs)}

    async def close(self):
        pass


class FileStorageBackend(StorageBackend):
    """File-based storage backend for development and small-scale deployments."""

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0
        }

    @property
    def sites_directory(self) -> Path:
        return self.data_directory / 'sites'

    @property
    def pages_directory(self) -> Path:
        return self.data_directory / 'pages'

    async def initialize(self):
        """Create data directory structure."""
        try:
            self.sites_directory.mkdir(parents=True, exist_ok=True)
            self.pages_directory.mkdir(parents=True, exist_ok=True)

            stats_file = self.data_directory / 'stats.json'
            if stats_file.exists():
                with open(stats_file, 'r') as f:
                    self.stats.update(json.load(f))

            self.logger.info(f"File storage initialized at {self.data_directory}")

        except (OSError, ValueError) as e:
            raise DatabaseError(f"Failed to initialize file storage: {e}")

    def _site_file(self, job_id: str) -> Path:
        return self.sites_directory / f"{job_id}.json"

    def _pages_file(self, job_id: str) -> Path:
        return self.pages_directory / f"{job_id}.jsonl"

    def _write_job(self, job: SiteJob):
        with open(self._site_file(job.id), 'w', encoding='utf-8') as f:
            json.dump(job.to_dict(), f, ensure_ascii=False, indent=2)

    def _iter_jobs(self) -> Iterable[SiteJob]:
        for site_file in sorted(self.sites_directory.glob('*.json')):
            with open(site_file, 'r', encoding='utf-8') as f:
                yield SiteJob.from_dict(json.load(f))

    async def delete_site_data(self, url: str) -> int:
        url = normalize_site_url(url)
        try:
            doomed = [job.id for job in self._iter_jobs() if job.url == url]
            for job_id in doomed:
                self._site_file(job_id).unlink(missing_ok=True)
                self._pages_file(job_id).unlink(missing_ok=True)
        except (OSError, ValueError) as e:
            raise DatabaseError(f"Failed to delete data for {url}: {e}")

        if doomed:
            self.logger.debug(f"Deleted {len(doomed)} site job(s) for {url}")
        return len(doomed)

    async def create_site_job(self, job: SiteJob) -> str:
        stored = SiteJob.from_dict({**job.to_dict(), 'id': uuid.uuid4().hex})
        try:
            self._write_job(stored)
            self._pages_file(stored.id).touch()
        except OSError as e:
            raise DatabaseError(f"Failed to create site job for {job.url}: {e}")
        return stored.id

    async def update_job_status(self, job_id: str, status: SearchStatus,
                                last_error: Optional[str] = None):
        site_file = self._site_file(job_id)
        try:
            with open(site_file, 'r', encoding='utf-8') as f:
                job = SiteJob.from_dict(json.load(f))
            job.status = status
            job.status_time = utcnow()
            job.last_error = last_error
            self._write_job(job)
        except FileNotFoundError:
            raise DatabaseError(f"Unknown site job: {job_id}")
        except (OSError, ValueError) as e:
            raise DatabaseError(f"Failed to update site job {job_id}: {e}")

    async def save_all_pages(self, records: List[PageRecord]):
        by_site: Dict[str, List[PageRecord]] = {}
        for record in records:
            by_site.setdefault(record.site_id, []).append(record)

        try:
            for site_id, site_records in by_site.items():
                pages_file = self._pages_file(site_id)
                if not pages_file.exists():
                    raise PersistenceError(f"Unknown site job: {site_id}")
                with open(pages_file, 'a', encoding='utf-8') as f:
                    for record in site_records:
                        f.write(json.dumps(record.to_dict(), ensure_ascii=False) + '\n')
        except OSError as e:
            self.stats['storage_errors'] += 1
            raise PersistenceError(f"Failed to save {len(records)} pages: {e}")

        self.stats['total_stored'] += len(records)

    async def get_site_job(self, job_id: str) -> Optional[SiteJob]:
        site_file = self._site_file(job_id)
        if not site_file.exists():
            return None
        with open(site_file, 'r', encoding='utf-8') as f:
            return SiteJob.from_dict(json.load(f))

    async def get_pages(self, site_id: str) -> List[PageRecord]:
        pages_file = self._pages_file(site_id)
        if not pages_file.exists():
            return []
        with open(pages_file, 'r', encoding='utf-8') as f:
            return [PageRecord.from_dict(json.loads(line)) for line in f if line.strip()]

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        stats = self.stats.copy()
        if self.data_directory.exists():
            stats['total_size_bytes'] = sum(
                f.stat().st_size for f in self.data_directory.rglob('*') if f.is_file()
            )
        return stats

    async def close(self):
        """Save statistics."""
        try:
            stats_file = self.data_directory / 'stats.json'
            with open(stats_file, 'w') as f:
                json.dump(self.stats, f, indent=2)
        except OSError as e:
            self.logger.error(f"Error saving statistics: {e}")


class CassandraStorageBackend(StorageBackend):
    """Cassandra storage backend for production deployments."""

    def __init__(self, config: Dict[str, Any]):
        if not CASSANDRA_AVAILABLE:
            raise DatabaseError("Cassandra driver not available. Install cassandra-driver with a supported reactor.")

        self.config = config
        self.cluster = None
        self.session = None
        self.statements: Dict[str, Any] = {}
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0
        }

    async def initialize(self):
        """Initialize Cassandra connection, keyspace and tables."""
        try:
            await asyncio.to_thread(self._connect)
        except Exception as e:
            raise DatabaseError(f"Failed to initialize Cassandra: {e}")

    def _connect(self):
        hosts = self.config.get('hosts', ['localhost'])
        port = self.config.get('port', 9042)

        self.cluster = Cluster(
            hosts,
            port=port,
            load_balancing_policy=DCAwareRoundRobinPolicy()
        )
        self.session = self.cluster.connect()

        keyspace = self.config.get('keyspace', 'site_indexer')
        replication_factor = self.config.get('replication_factor', 1)

        self.session.execute(f"""
            CREATE KEYSPACE IF NOT EXISTS {keyspace}
            WITH replication = {{
                'class': 'SimpleStrategy',
                'replication_factor': {replication_factor}
            }}
        """)
        self.session.set_keyspace(keyspace)
        self._create_tables()
        self._prepare_statements()

        self.logger.info(f"Cassandra storage initialized with keyspace: {keyspace}")

    def _create_tables(self):
        self.session.execute("""
            CREATE TABLE IF NOT EXISTS site_job (
                id uuid PRIMARY KEY,
                url text,
                name text,
                status text,
                status_time timestamp,
                last_error text
            )
        """)

        # Lookup table for deleting previous runs of a site
        self.session.execute("""
            CREATE TABLE IF NOT EXISTS site_job_by_url (
                url text,
                id uuid,
                PRIMARY KEY (url, id)
            )
        """)

        self.session.execute("""
            CREATE TABLE IF NOT EXISTS page (
                site_id uuid,
                path text,
                code int,
                content text,
                error text,
                PRIMARY KEY (site_id, path)
            )
        """)

    def _prepare_statements(self):
        prepare = self.session.prepare
        self.statements = {
            'jobs_by_url': prepare("SELECT id FROM site_job_by_url WHERE url = ?"),
            'delete_job': prepare("DELETE FROM site_job WHERE id = ?"),
            'delete_pages': prepare("DELETE FROM page WHERE site_id = ?"),
            'delete_url': prepare("DELETE FROM site_job_by_url WHERE url = ?"),
            'insert_job': prepare(
                "INSERT INTO site_job (id, url, name, status, status_time, last_error) "
                "VALUES (?, ?, ?, ?, ?, ?)"
            ),
            'insert_url': prepare("INSERT INTO site_job_by_url (url, id) VALUES (?, ?)"),
            'update_status': prepare(
                "UPDATE site_job SET status = ?, status_time = ?, last_error = ? WHERE id = ?"
            ),
            'insert_page': prepare(
                "INSERT INTO page (site_id, path, code, content, error) VALUES (?, ?, ?, ?, ?)"
            ),
            'select_job': prepare("SELECT * FROM site_job WHERE id = ?"),
            'select_pages': prepare("SELECT * FROM page WHERE site_id = ?"),
        }

    def _execute(self, name: str, params: tuple):
        return self.session.execute(self.statements[name], params)

    async def delete_site_data(self, url: str) -> int:
        url = normalize_site_url(url)

        def delete() -> int:
            job_ids = [row.id for row in self._execute('jobs_by_url', (url,))]
            for job_id in job_ids:
                self._execute('delete_pages', (job_id,))
                self._execute('delete_job', (job_id,))
            self._execute('delete_url', (url,))
            return len(job_ids)

        try:
            return await asyncio.to_thread(delete)
        except Exception as e:
            raise DatabaseError(f"Failed to delete data for {url}: {e}")

    async def create_site_job(self, job: SiteJob) -> str:
        job_id = uuid.uuid4()

        def create():
            self._execute('insert_job', (
                job_id, job.url, job.name, job.status.value, job.status_time, job.last_error
            ))
            self._execute('insert_url', (job.url, job_id))

        try:
            await asyncio.to_thread(create)
        except Exception as e:
            raise DatabaseError(f"Failed to create site job for {job.url}: {e}")
        return str(job_id)

    async def update_job_status(self, job_id: str, status: SearchStatus,
                                last_error: Optional[str] = None):
        try:
            await asyncio.to_thread(
                self._execute, 'update_status',
                (status.value, utcnow(), last_error, uuid.UUID(job_id))
            )
        except Exception as e:
            raise DatabaseError(f"Failed to update site job {job_id}: {e}")

    async def save_all_pages(self, records: List[PageRecord]):
        params = [
            (uuid.UUID(r.site_id), r.path, r.code, r.content, r.error)
            for r in records
        ]
        try:
            await asyncio.to_thread(
                execute_concurrent_with_args,
                self.session, self.statements['insert_page'], params,
                concurrency=50, raise_on_first_error=True
            )
        except Exception as e:
            self.stats['storage_errors'] += 1
            raise PersistenceError(f"Failed to save {len(records)} pages: {e}")
        self.stats['total_stored'] += len(records)

    async def get_site_job(self, job_id: str) -> Optional[SiteJob]:
        try:
            row = (await asyncio.to_thread(
                self._execute, 'select_job', (uuid.UUID(job_id),)
            )).one()
        except Exception as e:
            raise DatabaseError(f"Failed to load site job {job_id}: {e}")

        if not row:
            return None
        return SiteJob(
            id=str(row.id),
            url=row.url,
            name=row.name,
            status=SearchStatus(row.status),
            status_time=row.status_time,
            last_error=row.last_error
        )

    async def get_pages(self, site_id: str) -> List[PageRecord]:
        try:
            rows = await asyncio.to_thread(
                lambda: list(self._execute('select_pages', (uuid.UUID(site_id),)))
            )
        except Exception as e:
            raise DatabaseError(f"Failed to load pages of {site_id}: {e}")

        return [
            PageRecord(site_id=site_id, path=row.path, code=row.code,
                       content=row.content, error=row.error)
            for row in rows
        ]

    async def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    async def close(self):
        """Close Cassandra connections."""
        if self.cluster:
            self.cluster.shutdown()
            self.logger.info("Cassandra connections closed")


class DatabaseManager:
    """Main database manager that handles different storage backends."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.backend: Optional[StorageBackend] = None
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Initialize the appropriate storage backend."""
        backend_type = self.config.type.lower()

        if backend_type == 'cassandra':
            self.backend = CassandraStorageBackend(self.config.cassandra)
        elif backend_type == 'file':
            self.backend = FileStorageBackend(self.config.file['data_directory'])
        elif backend_type == 'memory':
            self.backend = InMemoryStorageBackend()
        else:
            raise DatabaseError(f"Unknown database type: {backend_type}")

        await self.backend.initialize()
        self.logger.info(f"Database manager initialized with {backend_type} backend")

    def _require_backend(self) -> StorageBackend:
        if not self.backend:
            raise DatabaseError("Database not initialized")
        return self.backend

    async def delete_site_data(self, url: str) -> int:
        return await self._require_backend().delete_site_data(url)

    async def create_site_job(self, job: SiteJob) -> str:
        return await self._require_backend().create_site_job(job)

    async def update_job_status(self, job_id: str, status: SearchStatus,
                                last_error: Optional[str] = None):
        await self._require_backend().update_job_status(job_id, status, last_error)

    async def save_all_pages(self, records: List[PageRecord]):
        await self._require_backend().save_all_pages(records)

    async def get_site_job(self, job_id: str) -> Optional[SiteJob]:
        return await self._require_backend().get_site_job(job_id)

    async def get_pages(self, site_id: str) -> List[PageRecord]:
        return await self._require_backend().get_pages(site_id)

    async def get_stats(self) -> Dict[str, Any]:
        return await self._require_backend().get_stats()

    async def close(self):
        """Close database connections."""
        if self.backend:
            await self.backend.close()
            self.logger.info("Database connections closed")
