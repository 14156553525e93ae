"""Direct crawl-and-index pipeline, used when no snapshot store is configured."""

import logging
import time
from datetime import timedelta
from typing import List, Optional

from indexer.search_index import DocumentIndex
from observability.prometheus_metrics import record_ingestion_run
from .cancellation import CancellationToken
from .converter import DocumentProcessor
from .crawler import WebCrawler
from .enrichment import Enricher
from .errors import ConversionError, RunCancelled, SearchIndexError
from .models import Document, PipelineResult

logger = logging.getLogger(__name__)


class Pipeline:
    """Crawl a start URL, then convert, enrich and index every page in one call."""

    def __init__(self, crawler: WebCrawler, index: DocumentIndex,
                 processor: Optional[DocumentProcessor] = None,
                 enricher: Optional[Enricher] = None):
        self.crawler = crawler
        self.index = index
        self.processor = processor or DocumentProcessor()
        self.enricher = enricher

    async def run(self, start_url: str, cancel: Optional[CancellationToken] = None) -> PipelineResult:
        """Execute the full flow for ``start_url``.

        Raises:
            SearchIndexError: if the index cannot be created
            CrawlError: if the crawl could not start and produced no pages
        """
        cancel = cancel or CancellationToken()
        start = time.monotonic()
        result = PipelineResult()

        await self.index.ensure_index()

        outcome = await self.crawler.crawl(start_url, cancel)
        result.pages_scraped = len(outcome.pages)
        if outcome.cancelled:
            result.errors.append(f"crawl of {start_url} cancelled after {len(outcome.pages)} pages")
            result.cancelled = True

        try:
            for page in outcome.pages:
                if cancel.cancelled:
                    raise RunCancelled(cancel.reason or "cancelled")

                try:
                    document = self.processor.process(
                        page.url, page.content, content_type=page.content_type, scraped_at=page.scraped_at)
                except ConversionError as e:
                    result.errors.append(f"failed to convert {page.url}: {e}")
                    continue

                if self.enricher is not None:
                    result.warnings.extend(await self.enricher.enrich(document, cancel))

                try:
                    await cancel.guard(self.index.upsert(document))
                except SearchIndexError as e:
                    result.errors.append(str(e))
                else:
                    result.docs_indexed += 1

        except RunCancelled:
            if not result.cancelled:
                result.errors.append("context cancelled")
            result.cancelled = True

        finally:
            try:
                await self.index.refresh()
            except SearchIndexError as e:
                logger.warning(f"Failed to refresh index after crawling {start_url}: {e}")

        elapsed = time.monotonic() - start
        result.duration = timedelta(seconds=elapsed)
        record_ingestion_run("direct", elapsed)
        logger.info(f"Pipeline run for {start_url}: {result.pages_scraped} pages, "
                    f"{result.docs_indexed} docs indexed in {elapsed:.2f}s")
        return result

    async def search(self, query: str, limit: int = 10) -> List[Document]:
        return await self.index.search(query, limit)

    async def delete_index(self) -> None:
        await self.index.delete_index()
