"""Web crawler pipeline for docslurp.

Fetches a documentation site breadth-first from a seed URL and turns each
page into a plain-text ``Document``.
"""

import asyncio
import logging
import random
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Iterable, List, Optional, Protocol, Set, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

import aiohttp
from bs4 import BeautifulSoup
from trafilatura import extract

from .chunker import Document
from .errors import CrawlError

logger = logging.getLogger(__name__)

USER_AGENT = "docslurp/1.0"

BOILERPLATE_SELECTORS = "script, style, noscript, nav, footer, header, aside, .sidebar, .navigation"
MAIN_SELECTORS = [
    "main",
    "article",
    "[role='main']",
    ".content",
    ".main-content",
    ".doc-content",
    ".markdown-body",
    "#content",
]
SKIPPED_EXTENSIONS = re.compile(r"\.(png|jpe?g|gif|svg|webp|ico|pdf|zip|gz|tar|mp4|mp3)$", re.IGNORECASE)
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


@dataclass
class CrawlStats:
    """Statistics for a crawl session."""
    fetched: int = 0
    documents: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None

    def finish(self):
        self.end_time = datetime.now(timezone.utc)


@dataclass
class CrawlOutcome:
    """Documents found by a crawl and where it stopped."""
    documents: List[Document]
    pending_urls: List[str] = field(default_factory=list)
    max_pages_reached: bool = False
    stats: CrawlStats = field(default_factory=CrawlStats)


class Crawler(Protocol):
    """Crawler contract shared by every backend."""

    async def crawl(self,
                    seed_url: str,
                    max_depth: int,
                    max_pages: int,
                    pending_urls: Optional[Iterable[str]] = None,
                    exclude_urls: Optional[Iterable[str]] = None) -> CrawlOutcome:
        ...


def _clean_text(text: str) -> str:
    lines = [re.sub(r"\s+", " ", line).strip() for line in text.splitlines()]
    text = "\n".join(line for line in lines if line)
    return text.strip()


def extract_document(html: str, url: str, min_content_length: int = 100) -> Optional[Document]:
    """Turn an HTML page into a plain-text document.

    Returns None when the page has too little text to be worth indexing.
    """
    soup = BeautifulSoup(html, "html.parser")

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()
    if not title:
        h1 = soup.find("h1")
        title = h1.get_text(strip=True) if h1 else ""
    title = title or url

    content = extract(html, include_tables=True, include_comments=False) or ""
    content = _clean_text(content)

    if len(content) < min_content_length:
        for element in soup.select(BOILERPLATE_SELECTORS):
            element.decompose()

        content = ""
        for selector in MAIN_SELECTORS:
            element = soup.select_one(selector)
            if element is not None:
                content = _clean_text(element.get_text("\n"))
                if content:
                    break
        if not content and soup.body is not None:
            content = _clean_text(soup.body.get_text("\n"))

    if len(content) < min_content_length:
        return None
    return Document(url=url, title=title, content=content)


def extract_links(html: str, page_url: str, origin: Tuple[str, str]) -> List[str]:
    """Same-origin page links in document order, without duplicates."""
    soup = BeautifulSoup(html, "html.parser")
    seen: Set[str] = set()
    links = []

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or "#" in href:
            continue
        absolute = urljoin(page_url, href)
        parsed = urlparse(absolute)
        if (parsed.scheme, parsed.netloc) != origin:
            continue
        if SKIPPED_EXTENSIONS.search(parsed.path):
            continue
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)

    return links


class WebCrawler:
    """Plain HTTP + DOM crawler for static documentation sites."""

    def __init__(self,
                 request_timeout: int = 30,
                 user_agent: str = USER_AGENT,
                 max_retries: int = 2,
                 retry_delay: float = 1.0,
                 max_retry_delay: float = 10.0,
                 max_links_per_page: int = 20,
                 min_content_length: int = 100):
        """Initialize crawler.

        Args:
            request_timeout: Request timeout in seconds
            user_agent: User agent string
            max_retries: Maximum number of retry attempts per page
            retry_delay: Base delay between retries (seconds)
            max_retry_delay: Maximum delay between retries (seconds)
            max_links_per_page: Links followed from any one page
            min_content_length: Pages with less text are not indexed
        """
        self.request_timeout = request_timeout
        self.user_agent = user_agent
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.max_links_per_page = max_links_per_page
        self.min_content_length = min_content_length
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers={'User-Agent': self.user_agent}
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    async def _fetch(self, url: str, stats: CrawlStats) -> Optional[str]:
        """Fetch a page's HTML, or None if it cannot be fetched."""
        for attempt in range(self.max_retries + 1):
            try:
                async with self.session.get(url, allow_redirects=True) as response:
                    if response.status in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                        delay = self._calculate_retry_delay(attempt)
                        logger.warning(f"Retryable status {response.status} for {url}, retrying in {delay:.2f}s")
                        stats.retried += 1
                        await asyncio.sleep(delay)
                        continue

                    if response.status != 200:
                        logger.info(f"Skipping {url}: HTTP {response.status}")
                        return None

                    content_type = response.headers.get('content-type', '')
                    if not content_type.startswith('text/'):
                        logger.info(f"Skipping {url}: non-text content type {content_type}")
                        return None

                    return await response.text()

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                if attempt < self.max_retries:
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(f"Error fetching {url}: {e!r}, retrying in {delay:.2f}s")
                    stats.retried += 1
                    await asyncio.sleep(delay)
                    continue
                logger.warning(f"Failed to fetch {url} after {attempt + 1} attempts: {e!r}")
                return None

        return None

    async def crawl(self,
                    seed_url: str,
                    max_depth: int,
                    max_pages: int,
                    pending_urls: Optional[Iterable[str]] = None,
                    exclude_urls: Optional[Iterable[str]] = None) -> CrawlOutcome:
        """Crawl breadth-first from ``seed_url``.

        Args:
            seed_url: Start page; only links on its origin are followed
            max_depth: Maximum link depth from the start pages
            max_pages: Stop after this many documents
            pending_urls: Frontier of an earlier crawl to start from instead of the seed
            exclude_urls: Pages that must not be fetched again

        Returns:
            Outcome with documents and, if the page cap was hit, the
            unvisited frontier
        """
        parsed_seed = urlparse(seed_url)
        if parsed_seed.scheme not in ("http", "https") or not parsed_seed.netloc:
            raise CrawlError(f"Not an http(s) URL: {seed_url}")
        origin = (parsed_seed.scheme, parsed_seed.netloc)

        starts = list(pending_urls) if pending_urls else [seed_url]
        queue: Deque[Tuple[str, int]] = deque((urldefrag(url)[0], 0) for url in starts)
        visited: Set[str] = {urldefrag(url)[0] for url in (exclude_urls or [])}
        queued: Set[str] = {url for url, _ in queue}
        documents: List[Document] = []
        stats = CrawlStats()

        owns_session = self.session is None
        if owns_session:
            await self.__aenter__()

        logger.info(f"Starting crawl of {seed_url} (max_depth={max_depth}, max_pages={max_pages})")
        try:
            while queue and len(documents) < max_pages:
                url, depth = queue.popleft()
                if url in visited:
                    continue
                visited.add(url)

                try:
                    html = await self._fetch(url, stats)
                except Exception as e:
                    logger.warning(f"Failed to crawl {url}: {e!r}")
                    html = None
                stats.fetched += 1

                if html is None:
                    stats.failed += 1
                    continue

                document = extract_document(html, url, self.min_content_length)
                if document is not None:
                    documents.append(document)
                    stats.documents += 1
                else:
                    stats.skipped += 1

                if depth < max_depth:
                    links = [
                        link for link in extract_links(html, url, origin)
                        if link not in visited and link not in queued
                    ]
                    for link in links[:self.max_links_per_page]:
                        queue.append((link, depth + 1))
                        queued.add(link)
        finally:
            if owns_session:
                await self.close()

        max_pages_reached = len(documents) >= max_pages
        pending = []
        if max_pages_reached:
            pending = [url for url, _ in queue if url not in visited]
            pending = list(dict.fromkeys(pending))

        stats.finish()
        logger.info(
            f"Crawl completed: {stats.documents} documents, {stats.failed} failed, "
            f"{stats.skipped} without content, {len(pending)} pending"
        )
        return CrawlOutcome(
            documents=documents,
            pending_urls=pending,
            max_pages_reached=max_pages_reached,
            stats=stats,
        )


async def crawl_site(seed_url: str, max_depth: int = 3, max_pages: int = 100,
                     request_timeout: int = 30) -> CrawlOutcome:
    """Convenience function to crawl a site with a fresh crawler."""
    async with WebCrawler(request_timeout=request_timeout) as crawler:
        return await crawler.crawl(seed_url, max_depth, max_pages)
