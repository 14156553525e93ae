"""Ingestion of a stored crawl run into the search index.

Reads ``{prefix}/metadata.json`` to recover page URLs, then converts,
enriches and upserts every ``{prefix}/pages/*.md`` object. Running the same
prefix twice overwrites the same document ids.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from indexer.search_index import DocumentIndex
from observability.prometheus_metrics import record_ingestion_run
from .cancellation import CancellationToken
from .converter import DocumentProcessor
from .enrichment import Enricher
from .errors import ConversionError, RunCancelled, SearchIndexError, StorageError
from .models import IngestionResult
from .storage import SnapshotStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "context cancelled"


def _parse_timestamp(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class IngestionEngine:
    """Reads a checkpointed crawl run and indexes its pages."""

    def __init__(self, store: SnapshotStore, index: DocumentIndex,
                 processor: Optional[DocumentProcessor] = None,
                 enricher: Optional[Enricher] = None):
        self.store = store
        self.index = index
        self.processor = processor or DocumentProcessor()
        self.enricher = enricher

    async def ingest(self, prefix: str, cancel: Optional[CancellationToken] = None) -> IngestionResult:
        """Index every stored page under ``prefix``.

        Per-document failures (read, conversion, upsert) land in
        ``result.errors`` and the run continues. Cancellation stops the run
        between documents; what was already indexed stays indexed.

        Raises:
            SearchIndexError: if the index cannot be created
            StorageError: if the manifest or the page listing cannot be read
        """
        cancel = cancel or CancellationToken()
        start = time.monotonic()
        result = IngestionResult(prefix=prefix)

        logger.info(f"Starting ingestion of {prefix}")

        await self.index.ensure_index()

        manifest = await self.store.get_manifest(prefix)
        url_by_file = manifest.filename_to_url()
        scraped_at = _parse_timestamp(manifest.timestamp)

        files = await self.store.list_pages(prefix)
        logger.info(f"Found {len(files)} files to ingest under {prefix}")

        try:
            for filename in files:
                if cancel.cancelled:
                    raise RunCancelled(cancel.reason or CANCELLED_MESSAGE)

                page_url = url_by_file.get(filename)
                if page_url is None:
                    logger.warning(f"No URL found for file {filename} in manifest of {prefix}")
                    page_url = filename

                try:
                    content = await cancel.guard(self.store.get_page(prefix, filename))
                except StorageError as e:
                    result.errors.append(str(e))
                    continue

                try:
                    document = self.processor.process(page_url, content, scraped_at=scraped_at)
                except ConversionError as e:
                    result.errors.append(f"failed to convert {page_url}: {e}")
                    continue

                if self.enricher is not None:
                    result.warnings.extend(await self.enricher.enrich(document, cancel))

                logger.debug(f"Indexing document {document.id} ({document.url}, {len(document.tags)} tags)")
                try:
                    await cancel.guard(self.index.upsert(document))
                except SearchIndexError as e:
                    logger.error(f"Failed to index document {document.id}: {e}")
                    result.errors.append(str(e))
                else:
                    result.docs_indexed += 1

        except RunCancelled:
            result.errors.append(CANCELLED_MESSAGE)
            result.cancelled = True
            logger.info(f"Ingestion of {prefix} cancelled after {result.docs_indexed} documents")

        finally:
            try:
                await self.index.refresh()
            except SearchIndexError as e:
                logger.warning(f"Failed to refresh index after ingesting {prefix}: {e}")

        elapsed = time.monotonic() - start
        result.duration = timedelta(seconds=elapsed)
        record_ingestion_run("snapshot", elapsed)

        logger.info(f"Ingestion of {prefix} complete: {result.docs_indexed} docs indexed "
                    f"in {elapsed:.2f}s, {len(result.errors)} errors")
        return result
