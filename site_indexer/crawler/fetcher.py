"""
Web page fetcher shared by every crawl task of a run.
"""

import asyncio
import aiohttp
import logging
import time
from typing import Optional, Dict
from dataclasses import dataclass
from aiohttp import ClientTimeout, ClientError

from ..utils.config import FetcherConfig


@dataclass
class FetchResult:
    """Result of a successful fetch."""
    url: str
    status_code: int
    content: str
    content_type: Optional[str] = None
    fetch_time: float = 0.0


class FetchError(Exception):
    """A page could not be fetched. Never fatal for the crawl."""

    def __init__(self, url: str, status_code: int, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.status_code = status_code
        self.message = message


class WebFetcher:
    """
    Fetches web pages over a single aiohttp session.
    Safe to call concurrently from many crawl tasks.
    """

    TEXT_TYPES = (
        'text/html',
        'text/plain',
        'text/xml',
        'application/xml',
        'application/xhtml+xml',
    )

    def __init__(self, config: FetcherConfig):
        self.user_agent = config.user_agent
        self.referrer = config.referrer
        self.request_timeout = config.request_timeout
        self.max_concurrent_requests = config.max_concurrent_requests
        self.max_content_bytes = config.max_content_bytes

        self.logger = logging.getLogger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None
        self.semaphore = asyncio.Semaphore(self.max_concurrent_requests)

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            timeout = ClientTimeout(total=self.request_timeout)
            headers = {'User-Agent': self.user_agent, 'Referer': self.referrer}

            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers=headers,
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL.

        Args:
            url: The URL to fetch

        Returns:
            FetchResult with the decoded page body

        Raises:
            FetchError: on HTTP errors, unsupported content, timeouts and
                network failures
        """
        if self.session is None:
            raise RuntimeError("WebFetcher session not started")

        start_time = time.time()

        async with self.semaphore:
            self.stats['total_requests'] += 1
            try:
                async with self.session.get(url) as response:
                    content_type = response.headers.get('content-type', '').lower()

                    if response.status >= 400:
                        raise FetchError(url, response.status, f"HTTP {response.status}")

                    if not self._is_text_content(content_type):
                        raise FetchError(url, response.status,
                                         f"Unsupported content type: {content_type or 'unknown'}")

                    content = await self._read_content(response)

            except FetchError:
                self.stats['failed_requests'] += 1
                raise

            except asyncio.TimeoutError:
                self.stats['failed_requests'] += 1
                self.logger.warning(f"Timeout fetching {url}")
                raise FetchError(url, 0, "Request timeout")

            except ClientError as e:
                self.stats['failed_requests'] += 1
                self.logger.warning(f"Client error fetching {url}: {e}")
                raise FetchError(url, 0, f"Client error: {e}")

        self.stats['successful_requests'] += 1
        self.stats['total_bytes_downloaded'] += len(content)
        fetch_time = time.time() - start_time

        self.logger.debug(f"Fetched {url}: {response.status} ({len(content)} chars)")
        return FetchResult(
            url=url,
            status_code=response.status,
            content=content,
            content_type=content_type,
            fetch_time=fetch_time
        )

    def _is_text_content(self, content_type: str) -> bool:
        """Check if content type is text-based."""
        return any(text_type in content_type for text_type in self.TEXT_TYPES)

    async def _read_content(self, response: aiohttp.ClientResponse) -> str:
        """Read the response body, refusing anything larger than max_content_bytes."""
        url = str(response.url)

        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_bytes:
            raise FetchError(url, response.status, f"Content too large ({content_length} bytes)")

        content_bytes = b''
        async for chunk in response.content.iter_chunked(8192):
            content_bytes += chunk
            if len(content_bytes) > self.max_content_bytes:
                raise FetchError(url, response.status, "Content exceeded size limit")

        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            for fallback_encoding in ['utf-8', 'cp1252']:
                try:
                    return content_bytes.decode(fallback_encoding)
                except UnicodeDecodeError:
                    continue
            return content_bytes.decode('utf-8', errors='ignore')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
