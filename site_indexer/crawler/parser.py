"""
Link extraction and URL normalization for crawling a single site.
"""

import logging
from typing import List
from urllib.parse import urljoin, urlparse, urlunparse
from bs4 import BeautifulSoup


SKIP_EXTENSIONS = (
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.zip', '.rar', '.tar', '.gz', '.exe', '.dmg', '.iso',
    '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.flv',
    '.css', '.js', '.ico', '.woff', '.woff2', '.ttf', '.eot'
)

CRAWLABLE_SCHEMES = ('http', 'https')


def normalize_url(url: str, base_url: str = '') -> str:
    """Resolve url against base_url, drop the fragment and lowercase scheme and host."""
    parsed = urlparse(urljoin(base_url, url.strip()))
    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        parsed.path or '/',
        parsed.params,
        parsed.query,
        ''
    ))


def relative_path(url: str, site_url: str) -> str:
    """Path of url relative to the site root, always starting with a slash."""
    site_url = normalize_url(site_url)
    if url.startswith(site_url):
        return '/' + url[len(site_url):]
    parsed = urlparse(url)
    path = parsed.path or '/'
    return f"{path}?{parsed.query}" if parsed.query else path


class LinkExtractor:
    """
    Finds the links of a page that belong to the site being crawled.
    """

    def __init__(self, site_url: str, html_parser: str = 'lxml'):
        self.site_url = normalize_url(site_url)
        self.html_parser = html_parser
        self.logger = logging.getLogger(__name__)

    def extract_links(self, page_url: str, html_content: str) -> List[str]:
        """
        Extract normalized same-site links from a page.

        Args:
            page_url: The URL the content was fetched from
            html_content: Raw HTML content

        Returns:
            Unique crawlable links in document order
        """
        soup = BeautifulSoup(html_content, self.html_parser)
        links = {}

        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if not href or href.startswith('#'):
                continue

            link = normalize_url(href, page_url)
            if self.is_crawlable(link):
                links.setdefault(link, None)

        self.logger.debug(f"Extracted {len(links)} links from {page_url}")
        return list(links)

    def is_crawlable(self, url: str) -> bool:
        """Check if URL is an http(s) page under the site root."""
        parsed = urlparse(url)

        if parsed.scheme not in CRAWLABLE_SCHEMES:
            return False

        if not url.startswith(self.site_url):
            return False

        path = parsed.path.lower()
        return not any(path.endswith(ext) for ext in SKIP_EXTENSIONS)
