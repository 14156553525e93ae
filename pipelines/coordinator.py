"""Event-driven crawl/ingest coordination.

One producer crawls targets into the snapshot store and emits a
``ScrapeCompleteEvent`` per run; one consumer ingests each run's prefix.
The two are joined by an ``EventChannel``; with the default rendezvous
channel the producer waits for the consumer to take each event before
starting the next crawl, and events are ingested in dispatch order.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from .cancellation import CancellationToken
from .crawler import WebCrawler
from .errors import DocfeedError, RunCancelled
from .events import EventChannel
from .ingestion import IngestionEngine
from .models import IngestionCompleteEvent, ScrapeCompleteEvent, ScrapeResult
from .storage import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorResult:
    """Aggregate report for one coordinator run."""
    total_pages: int = 0
    docs_indexed: int = 0
    duration: timedelta = field(default_factory=timedelta)
    prefixes: List[str] = field(default_factory=list)
    scrapes: List[ScrapeResult] = field(default_factory=list)
    ingestions: List[IngestionCompleteEvent] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cancelled: bool = False


class EventDrivenCoordinator:
    """Runs crawl targets through the checkpoint store and the ingestion engine."""

    def __init__(self, crawler: WebCrawler, store: SnapshotStore,
                 engine: Optional[IngestionEngine] = None, channel_capacity: int = 0):
        self.crawler = crawler
        self.store = store
        self.engine = engine
        self.channel_capacity = channel_capacity

    async def _scrape(self, url: str, cancel: CancellationToken,
                      result: CoordinatorResult) -> Optional[ScrapeResult]:
        logger.info(f"Scraping {url}")
        try:
            scrape = await self.crawler.crawl_to_store(url, self.store, cancel)
        except RunCancelled:
            result.cancelled = True
            return None
        except DocfeedError as e:
            logger.error(f"Scrape of {url} failed: {e}")
            result.warnings.append(f"scrape of {url} failed: {e}")
            return None

        result.total_pages += scrape.page_count
        result.prefixes.append(scrape.prefix)
        result.scrapes.append(scrape)
        if scrape.cancelled:
            result.cancelled = True
        logger.info(f"Scraped {url}: {scrape.page_count} pages at {scrape.prefix}")
        return scrape

    async def scrape_only(self, urls: List[str],
                          cancel: Optional[CancellationToken] = None) -> CoordinatorResult:
        """Crawl every target into the store without ingesting."""
        cancel = cancel or CancellationToken()
        start = time.monotonic()
        result = CoordinatorResult()

        await self.store.ensure_bucket()
        for url in urls:
            if cancel.cancelled:
                result.cancelled = True
                break
            await self._scrape(url, cancel, result)

        result.duration = timedelta(seconds=time.monotonic() - start)
        return result

    async def ingest_prefix(self, prefix: str,
                            cancel: Optional[CancellationToken] = None) -> IngestionCompleteEvent:
        """Ingest a previously stored run without crawling."""
        if self.engine is None:
            raise DocfeedError("no ingestion engine configured")
        ingestion = await self.engine.ingest(prefix, cancel)
        return IngestionCompleteEvent(
            prefix=ingestion.prefix,
            docs_indexed=ingestion.docs_indexed,
            duration=ingestion.duration,
            errors=ingestion.errors + ingestion.warnings,
        )

    async def _consume(self, channel: "EventChannel[ScrapeCompleteEvent]",
                       cancel: CancellationToken, result: CoordinatorResult) -> None:
        async for event in channel:
            logger.info(f"Ingesting {event.prefix} ({event.page_count} pages)")
            try:
                ingestion = await self.engine.ingest(event.prefix, cancel)
            except DocfeedError as e:
                logger.error(f"Ingestion of {event.prefix} failed: {e}")
                result.warnings.append(f"ingestion of {event.prefix} failed: {e}")
                continue

            result.docs_indexed += ingestion.docs_indexed
            result.warnings.extend(ingestion.errors)
            result.warnings.extend(ingestion.warnings)
            result.ingestions.append(IngestionCompleteEvent(
                prefix=ingestion.prefix,
                docs_indexed=ingestion.docs_indexed,
                duration=ingestion.duration,
                errors=list(ingestion.errors),
            ))
            if ingestion.cancelled:
                result.cancelled = True

    async def _send(self, channel: "EventChannel[ScrapeCompleteEvent]",
                    event: ScrapeCompleteEvent, consumer: "asyncio.Task[None]") -> None:
        sending = asyncio.ensure_future(channel.send(event))
        done, _ = await asyncio.wait({sending, consumer}, return_when=asyncio.FIRST_COMPLETED)
        if sending not in done:
            sending.cancel()
            # The consumer stopped early; surface its failure
            consumer.result()
            raise DocfeedError("ingestion worker exited before the run finished")
        sending.result()

    async def run(self, urls: List[str], cancel: Optional[CancellationToken] = None,
                  ingest: bool = True) -> CoordinatorResult:
        """Crawl ``urls`` in order, ingesting each run as it is checkpointed.

        Per-target crawl or ingestion failures are reported as warnings; the
        remaining targets still run. The channel is closed after the last
        target is dispatched and the call returns once the ingestion worker
        has drained it.

        Raises:
            StorageError: if the bucket cannot be created
        """
        if not ingest or self.engine is None:
            return await self.scrape_only(urls, cancel)

        cancel = cancel or CancellationToken()
        start = time.monotonic()
        result = CoordinatorResult()

        await self.store.ensure_bucket()

        channel: EventChannel[ScrapeCompleteEvent] = EventChannel(self.channel_capacity)
        consumer = asyncio.ensure_future(self._consume(channel, cancel, result))

        try:
            for url in urls:
                if cancel.cancelled:
                    result.cancelled = True
                    break
                scrape = await self._scrape(url, cancel, result)
                if scrape is None:
                    continue
                await self._send(channel, ScrapeCompleteEvent(
                    bucket=self.store.bucket,
                    prefix=scrape.prefix,
                    source_url=scrape.source_url,
                    page_count=scrape.page_count,
                ), consumer)
        finally:
            if not consumer.done():
                await channel.close()
            await consumer

        result.duration = timedelta(seconds=time.monotonic() - start)
        logger.info(f"Coordinator finished: {result.total_pages} pages scraped, "
                    f"{result.docs_indexed} docs indexed in {result.duration.total_seconds():.2f}s")
        return result
