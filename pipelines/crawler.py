"""Web crawler pipeline for docfeed.

Fetches a start URL and, optionally, same-host pages linked from it up to a
depth bound. Pages are emitted as ``RawPage`` snapshots; ``crawl_to_store``
additionally checkpoints a run into the snapshot store.
"""

import asyncio
import logging
import random
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse, urlunparse

import aiohttp
from bs4 import BeautifulSoup

from config.settings import CrawlerConfig
from observability.prometheus_metrics import record_crawl_page, record_crawl_run
from .cancellation import CancellationToken
from .errors import CrawlError, RunCancelled, StorageError
from .markdown import detect, markdown_url_variants
from .models import RawPage, ScrapeManifest, ScrapeResult, page_filename, utcnow
from .storage import SnapshotStore, make_prefix

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
TEXT_CONTENT_TYPES = ("text/", "application/xhtml+xml", "application/xml")


@dataclass
class FetchResponse:
    """Result of fetching a single URL."""
    url: str
    status_code: int
    content: str = ""
    content_type: str = ""
    final_url: Optional[str] = None
    retry_count: int = 0


@dataclass
class CrawlStats:
    """Statistics for a crawl session."""
    total_urls: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    retried: int = 0
    markdown_variants: int = 0
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time:
            return self.end_time - self.start_time
        return None

    def finish(self):
        """Mark crawl as finished."""
        self.end_time = utcnow()


@dataclass
class CrawlOutcome:
    """Pages collected by one crawl, plus whether it was cut short."""
    pages: List[RawPage]
    stats: CrawlStats
    cancelled: bool = False


class WebCrawler:
    """Asynchronous same-host crawler with bounded parallelism."""

    def __init__(self, config: CrawlerConfig, session: Optional[aiohttp.ClientSession] = None,
                 retry_delay: float = 0.5, max_retry_delay: float = 10.0):
        """Initialize crawler.

        Args:
            config: Crawl behaviour (depth, delay, parallelism, timeout, ...)
            session: Optional externally managed HTTP session
            retry_delay: Base delay between retries (seconds)
            max_retry_delay: Maximum delay between retries (seconds)
        """
        self.config = config
        self.session = session
        self._owns_session = session is None
        self.semaphore = asyncio.Semaphore(config.parallelism)
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay

        # Rate limiting
        self.last_request_time: Dict[str, float] = {}
        self._domain_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self):
        if self.session is None:
            connector = aiohttp.TCPConnector(limit=self.config.parallelism * 2)
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers={'User-Agent': self.config.user_agent}
            )
            self._owns_session = True

    async def close(self):
        """Close the crawler session if this crawler created it."""
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    def _get_domain(self, url: str) -> str:
        return urlparse(url).netloc

    async def _respect_rate_limit(self, url: str, cancel: CancellationToken):
        """Space request starts to the same domain by the configured delay."""
        if self.config.delay <= 0:
            return
        domain = self._get_domain(url)
        async with self._domain_locks[domain]:
            last = self.last_request_time.get(domain)
            if last is not None:
                elapsed = time.monotonic() - last
                if elapsed < self.config.delay:
                    sleep_time = self.config.delay - elapsed
                    logger.debug(f"Rate limiting {domain}: sleeping {sleep_time:.2f}s")
                    await cancel.guard(asyncio.sleep(sleep_time))
            self.last_request_time[domain] = time.monotonic()

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    @staticmethod
    def _decode(body: bytes, charset: Optional[str]) -> str:
        try:
            return body.decode(charset or "utf-8", errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")

    async def _fetch_url(self, url: str, cancel: CancellationToken) -> Optional[FetchResponse]:
        """Fetch a single URL with rate limiting and retries.

        Returns:
            FetchResponse (any status), or None when every attempt failed
            at the transport level.

        Raises:
            RunCancelled: if cancellation was requested before or during the fetch
        """
        await self._ensure_session()
        last_exception: Optional[BaseException] = None

        for attempt in range(self.config.max_retries + 1):
            # Never issue a request once cancellation has been requested
            cancel.raise_if_cancelled()
            try:
                await self._respect_rate_limit(url, cancel)
                async with self.semaphore:
                    cancel.raise_if_cancelled()
                    logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.config.max_retries + 1})")
                    response = await cancel.guard(self._get(url))

                if response.status_code in RETRYABLE_STATUS_CODES and attempt < self.config.max_retries:
                    delay = self._calculate_retry_delay(attempt)
                    logger.debug(f"Retryable status {response.status_code} for {url}, retrying in {delay:.2f}s")
                    await cancel.guard(asyncio.sleep(delay))
                    continue

                response.retry_count = attempt
                return response

            except RunCancelled:
                raise
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_exception = e
                if attempt < self.config.max_retries:
                    delay = self._calculate_retry_delay(attempt)
                    logger.debug(f"Error fetching {url}: {e!r}, retrying in {delay:.2f}s")
                    await cancel.guard(asyncio.sleep(delay))
                    continue

        logger.debug(f"Giving up on {url} after {self.config.max_retries + 1} attempts: {last_exception!r}")
        return None

    async def _get(self, url: str) -> FetchResponse:
        async with self.session.get(url, allow_redirects=True) as response:
            content_type = response.headers.get('Content-Type', '')
            body = await response.read()
            return FetchResponse(
                url=url,
                status_code=response.status,
                content=self._decode(body, response.charset),
                content_type=content_type,
                final_url=str(response.url),
            )

    def _extract_links(self, content: str, base_url: str) -> List[str]:
        """Extract absolute, fragment-free links from HTML content, in page order."""
        links: List[str] = []
        seen: Set[str] = set()

        try:
            soup = BeautifulSoup(content, 'html.parser')
        except Exception as e:
            logger.warning(f"Failed to parse links from {base_url}: {e}")
            return links

        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if not href:
                continue
            parsed = urlparse(urljoin(base_url, href))
            if parsed.scheme not in ('http', 'https'):
                continue
            clean_url = urlunparse(parsed._replace(fragment=''))
            if clean_url not in seen:
                seen.add(clean_url)
                links.append(clean_url)

        return links

    def _should_follow_link(self, url: str, base_host: str) -> bool:
        """Only links on the start URL's host are followed."""
        return urlparse(url).netloc == base_host

    async def _try_markdown_variants(self, page_url: str,
                                     cancel: CancellationToken) -> Optional[Tuple[str, str]]:
        """Fetch Markdown candidates for a page; first one that classifies as
        Markdown wins. Cancellation means no variant; the caller keeps the
        page it already fetched."""
        for variant_url in markdown_url_variants(page_url):
            if cancel.cancelled:
                return None
            try:
                response = await self._fetch_url(variant_url, cancel)
            except RunCancelled:
                logger.debug(f"Markdown variant lookup for {page_url} cancelled")
                return None
            if response is None or response.status_code != 200:
                continue
            if detect(variant_url, response.content_type, response.content):
                return response.content, response.content_type
        return None

    async def _crawl_page(self, url: str, depth: int, base_host: str,
                          pages: List[RawPage], pages_lock: asyncio.Lock,
                          stats: CrawlStats, cancel: CancellationToken) -> List[str]:
        """Fetch one page, record it, and return links to follow."""
        response = await self._fetch_url(url, cancel)
        stats.total_urls += 1

        if response is None:
            stats.failed += 1
            record_crawl_page("failed")
            return []

        if response.retry_count:
            stats.retried += 1

        if response.status_code >= 400:
            logger.debug(f"Skipping page with error status {response.status_code}: {url}")
            stats.skipped += 1
            record_crawl_page("skipped")
            return []

        content_type = response.content_type
        if content_type and not content_type.lower().startswith(TEXT_CONTENT_TYPES):
            logger.debug(f"Skipping non-text content {content_type}: {url}")
            stats.skipped += 1
            record_crawl_page("skipped")
            return []

        logger.debug(f"Scraped page {url} ({content_type or 'unknown type'}, {len(response.content)} chars)")

        links: List[str] = []
        if self.config.follow_links and depth < self.config.max_depth:
            links = [
                link for link in self._extract_links(response.content, response.final_url or url)
                if self._should_follow_link(link, base_host)
            ]

        content = response.content
        if self.config.try_markdown_first:
            variant = await self._try_markdown_variants(url, cancel)
            if variant is not None:
                logger.debug(f"Using markdown variant for {url}")
                content, content_type = variant
                stats.markdown_variants += 1

        async with pages_lock:
            pages.append(RawPage(
                url=url,
                content=content,
                content_type=content_type,
                status_code=response.status_code,
            ))
        stats.successful += 1
        return links

    async def crawl(self, start_url: str, cancel: Optional[CancellationToken] = None) -> CrawlOutcome:
        """Crawl ``start_url`` and same-host pages up to ``max_depth`` hops.

        Args:
            start_url: First page; its host bounds link following
            cancel: External stop signal; on cancellation the pages already
                collected are returned with ``cancelled=True``

        Returns:
            CrawlOutcome with the collected pages

        Raises:
            CrawlError: if the start URL is unusable, or the crawl collected
                nothing and was not cancelled
        """
        cancel = cancel or CancellationToken()
        parsed = urlparse(start_url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise CrawlError(f"invalid start URL: {start_url!r}")

        base_host = parsed.netloc
        start_url = urlunparse(parsed._replace(fragment=''))
        max_depth = self.config.max_depth if self.config.follow_links else 0

        stats = CrawlStats()
        pages: List[RawPage] = []
        pages_lock = asyncio.Lock()
        visited: Set[str] = set()
        cancelled = False
        frontier = [start_url]

        logger.debug(f"Starting crawl of {start_url} (max_depth={max_depth})")

        for depth in range(max_depth + 1):
            current = [url for url in frontier if url not in visited]
            if not current:
                break
            visited.update(current)
            logger.debug(f"Crawling depth {depth}: {len(current)} URLs")

            tasks = [
                self._crawl_page(url, depth, base_host, pages, pages_lock, stats, cancel)
                for url in current
            ]
            results = await asyncio.gather(*tasks, return_exceptions=True)

            next_frontier: List[str] = []
            for url, result in zip(current, results):
                if isinstance(result, RunCancelled):
                    cancelled = True
                elif isinstance(result, Exception):
                    logger.warning(f"Unexpected error crawling {url}: {result}")
                    stats.failed += 1
                    record_crawl_page("failed")
                else:
                    next_frontier.extend(link for link in result if link not in visited)

            if cancelled or cancel.cancelled:
                cancelled = True
                break
            frontier = list(dict.fromkeys(next_frontier))

        stats.finish()
        record_crawl_run(stats.duration.total_seconds())

        if cancelled:
            logger.info(f"Crawl of {start_url} cancelled after {len(pages)} pages")
            return CrawlOutcome(pages=pages, stats=stats, cancelled=True)

        if not pages:
            raise CrawlError(f"crawl of {start_url} collected no pages "
                             f"({stats.skipped} skipped, {stats.failed} failed)")

        logger.debug(f"Crawl completed: {stats.successful} pages, {stats.skipped} skipped, "
                     f"{stats.failed} failed, {stats.markdown_variants} markdown variants")
        return CrawlOutcome(pages=pages, stats=stats)

    async def crawl_to_store(self, start_url: str, store: SnapshotStore,
                             cancel: Optional[CancellationToken] = None) -> ScrapeResult:
        """Crawl ``start_url`` and checkpoint the run into ``store``.

        Pages are written first; the manifest is written last, so its
        presence marks a complete checkpoint. A cancelled crawl still
        checkpoints the pages it collected.

        Raises:
            CrawlError: if the crawl produced nothing
            StorageError: if the manifest could not be written
        """
        prefix = make_prefix(start_url)
        logger.info(f"Starting crawl of {start_url} into {prefix}")

        outcome = await self.crawl(start_url, cancel)

        page_urls: List[str] = []
        for page in outcome.pages:
            filename = page_filename(page.url)
            try:
                await store.put_page(prefix, filename, page.content)
            except StorageError as e:
                logger.error(f"Failed to store {page.url}: {e}")
                record_crawl_page("failed")
                continue
            page_urls.append(page.url)
            record_crawl_page("stored")
            logger.debug(f"Stored {page.url} as {filename}")

        manifest = ScrapeManifest(
            source_url=start_url,
            timestamp=utcnow().strftime("%Y-%m-%dT%H:%M:%SZ"),
            page_count=len(page_urls),
            pages=page_urls,
        )
        await store.put_manifest(prefix, manifest)

        logger.info(f"Crawl of {start_url} checkpointed: {len(page_urls)} pages at {prefix}")
        return ScrapeResult(
            prefix=prefix,
            page_count=len(page_urls),
            source_url=start_url,
            cancelled=outcome.cancelled,
        )
