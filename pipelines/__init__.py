"""Pipelines package for docfeed.

Provides crawling, snapshot storage, conversion, enrichment, ingestion and
coordination. Only the dependency-free modules are re-exported here; import
the stage modules (``pipelines.crawler``, ``pipelines.ingestion``, ...)
directly.
"""

from .cancellation import CancellationToken
from .errors import (
    DocfeedError,
    ConfigurationError,
    CrawlError,
    StorageError,
    SearchIndexError,
    ModelError,
    ConversionError,
    RunCancelled
)
from .markdown import ContentKind, classify, detect, markdown_url_variants
from .models import (
    Document,
    RawPage,
    ScrapeManifest,
    ScrapeResult,
    ScrapeCompleteEvent,
    IngestionCompleteEvent,
    IngestionResult,
    PipelineResult,
    generate_document_id
)

__all__ = [
    # Cancellation
    'CancellationToken',

    # Errors
    'DocfeedError',
    'ConfigurationError',
    'CrawlError',
    'StorageError',
    'SearchIndexError',
    'ModelError',
    'ConversionError',
    'RunCancelled',

    # Content detection
    'ContentKind',
    'classify',
    'detect',
    'markdown_url_variants',

    # Models
    'Document',
    'RawPage',
    'ScrapeManifest',
    'ScrapeResult',
    'ScrapeCompleteEvent',
    'IngestionCompleteEvent',
    'IngestionResult',
    'PipelineResult',
    'generate_document_id'
]
