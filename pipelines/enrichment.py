"""Optional model-generated metadata for documents.

Tags, summary and embedding are each best-effort: a failed model call is
logged and the document continues without that field.
"""

import asyncio
import logging
import time
from typing import List, Optional

from indexer.embeddings import EmbeddingClient
from indexer.llm import LLMClient
from observability.prometheus_metrics import record_enrichment
from .cancellation import CancellationToken
from .errors import ModelError
from .models import Document

logger = logging.getLogger(__name__)


class Enricher:
    """Runs tag/summary generation and embedding for one document at a time.

    Both endpoints share one local accelerator, so every model call goes
    through a single lock; documents are enriched sequentially.
    """

    def __init__(self, llm: Optional[LLMClient] = None,
                 embedder: Optional[EmbeddingClient] = None,
                 expected_dims: Optional[int] = None):
        self.llm = llm
        self.embedder = embedder
        self.expected_dims = expected_dims if expected_dims is not None else (
            embedder.dimensions if embedder else None)
        self._model_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.llm is not None or self.embedder is not None

    async def close(self):
        if self.llm:
            await self.llm.close()
        if self.embedder:
            await self.embedder.close()

    async def enrich(self, document: Document, cancel: Optional[CancellationToken] = None) -> List[str]:
        """Fill ``tags``, ``summary`` and ``embedding`` on ``document`` in place.

        Returns:
            Warning strings for the fields that could not be produced

        Raises:
            RunCancelled: if cancellation fires during a model call
        """
        cancel = cancel or CancellationToken()
        warnings: List[str] = []

        if self.llm is not None:
            start = time.monotonic()
            try:
                async with self._model_lock:
                    result = await cancel.guard(self.llm.enrich_document(document.title, document.content))
            except ModelError as e:
                record_enrichment("tags", time.monotonic() - start, error=str(e))
                logger.warning(f"Failed to enrich document {document.url}: {e}")
                warnings.append(f"enrichment failed for {document.url}: {e}")
            else:
                record_enrichment("tags", time.monotonic() - start)
                document.tags = result.tags
                document.summary = result.summary
                logger.debug(f"Document enriched: {document.url} ({len(result.tags)} tags)")

        if self.embedder is not None:
            start = time.monotonic()
            try:
                async with self._model_lock:
                    vector = await cancel.guard(self.embedder.embed(document.content))
                if self.expected_dims and len(vector) != self.expected_dims:
                    raise ModelError(f"embedding has {len(vector)} dimensions, expected {self.expected_dims}")
            except ModelError as e:
                record_enrichment("embedding", time.monotonic() - start, error=str(e))
                logger.warning(f"Failed to generate embedding for {document.url}: {e}")
                warnings.append(f"embedding failed for {document.url}: {e}")
            else:
                record_enrichment("embedding", time.monotonic() - start)
                document.embedding = vector

        return warnings
